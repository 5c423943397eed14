from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """Parse an ISO timestamp, treating naive values as UTC."""
    if not raw or not isinstance(raw, str):
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: Optional[str] = None


# Fields on the user record that are owned by the passport projection
PASSPORT_FIELDS = ("memberships", "passport_last_updated")


@dataclass(frozen=True)
class UserRecord:
    """Identity of the signed-in user.

    Backend payloads carry more fields than the ones modelled here; those are
    kept verbatim in ``extra`` so a round trip through the credential store or
    a merge never loses them.
    """

    id: Any
    username: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    bio: Optional[str] = None
    preferences: Optional[Dict[str, Any]] = None
    must_change_username: bool = False
    is_restricted: bool = False
    restricted_until: Optional[str] = None
    can_post_or_report: bool = True
    memberships: Optional[List[Dict[str, Any]]] = None
    passport_last_updated: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def _known_fields(cls) -> tuple[str, ...]:
        return tuple(f.name for f in fields(cls) if f.name != "extra")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UserRecord":
        if data.get("id") is None:
            raise ValueError("user record requires an id")
        known = cls._known_fields()
        kwargs = {name: data[name] for name in known if name in data}
        extra = {k: v for k, v in data.items() if k not in known and k != "extra"}
        return cls(**kwargs, extra=extra)

    def to_dict(self) -> Dict[str, Any]:
        data = {name: getattr(self, name) for name in self._known_fields()}
        data.update(self.extra)
        return data

    def merged(self, partial: Mapping[str, Any]) -> "UserRecord":
        """Shallow merge ``partial`` on top of this record."""
        return UserRecord.from_dict({**self.to_dict(), **dict(partial)})

    def with_passport(self, passport: "Passport") -> "UserRecord":
        """Overlay only the passport-derived fields."""
        return self.merged(passport.user_projection())


@dataclass(frozen=True)
class Membership:
    timeline_id: int
    role: Optional[str] = None
    is_active_member: bool = False
    is_creator: bool = False
    is_site_owner: bool = False
    joined_at: Optional[str] = None
    timeline_visibility: str = "public"

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Optional["Membership"]:
        timeline_id = payload.get("timeline_id")
        if timeline_id in (None, ""):
            return None
        try:
            timeline_id = int(timeline_id)
        except (TypeError, ValueError):
            return None
        return cls(
            timeline_id=timeline_id,
            role=payload.get("role"),
            is_active_member=bool(payload.get("is_active_member", False)),
            is_creator=bool(payload.get("is_creator", False)),
            is_site_owner=bool(payload.get("is_site_owner", False)),
            joined_at=payload.get("joined_at"),
            # The sync endpoint reports "visibility", the passport endpoint "timeline_visibility"
            timeline_visibility=payload.get("timeline_visibility")
            or payload.get("visibility")
            or "public",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timeline_id": self.timeline_id,
            "role": self.role,
            "is_active_member": self.is_active_member,
            "is_creator": self.is_creator,
            "is_site_owner": self.is_site_owner,
            "joined_at": self.joined_at,
            "timeline_visibility": self.timeline_visibility,
        }

    def direct_entry(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Per-timeline lookup record; creators and site owners are always members."""
        stamp = (now or utcnow()).isoformat()
        return {
            "is_member": self.is_active_member or self.is_creator or self.is_site_owner,
            "role": self.role,
            "joined_at": self.joined_at or stamp,
            "is_creator": self.is_creator,
            "is_site_owner": self.is_site_owner,
            "timeline_visibility": self.timeline_visibility,
            "timestamp": stamp,
        }


@dataclass(frozen=True)
class Passport:
    user_id: Any
    memberships: List[Membership] = field(default_factory=list)
    last_updated: Optional[str] = None
    fetched_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_payload(
        cls, user_id: Any, payload: Mapping[str, Any], *, now: Optional[datetime] = None
    ) -> "Passport":
        fetched_at = now or utcnow()
        raw = payload.get("memberships") or []
        memberships = [
            m for m in (Membership.from_payload(item) for item in raw if isinstance(item, Mapping)) if m
        ]
        return cls(
            user_id=user_id,
            memberships=memberships,
            last_updated=payload.get("last_updated") or fetched_at.isoformat(),
            fetched_at=fetched_at,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Passport":
        return cls(
            user_id=data.get("user_id"),
            memberships=[
                m
                for m in (Membership.from_payload(item) for item in data.get("memberships") or [])
                if m
            ],
            last_updated=data.get("last_updated"),
            fetched_at=parse_timestamp(data.get("timestamp")) or utcnow(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "memberships": [m.to_dict() for m in self.memberships],
            "last_updated": self.last_updated,
            "timestamp": self.fetched_at.isoformat(),
        }

    def user_projection(self) -> Dict[str, Any]:
        return {
            "memberships": [m.to_dict() for m in self.memberships],
            "passport_last_updated": self.last_updated,
        }

    def find(self, timeline_id: int) -> Optional[Membership]:
        for membership in self.memberships:
            if membership.timeline_id == timeline_id:
                return membership
        return None

    def age_minutes(self, now: Optional[datetime] = None) -> float:
        return ((now or utcnow()) - self.fetched_at).total_seconds() / 60
