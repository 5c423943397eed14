import asyncio
import inspect
import itertools
import json
import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

# Keep stored state away from the real home directory before settings load
_test_tmp_dir = tempfile.mkdtemp(prefix="authsession_test_")
os.environ.setdefault("STORAGE_ROOT", _test_tmp_dir)
os.environ.setdefault("LOG_LEVEL", "WARNING")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authsession.config import Settings, reset_settings_cache  # noqa: E402
from authsession.service.runtime import Runtime  # noqa: E402

BASE_URL = "http://backend.test"


@dataclass
class Call:
    method: str
    path: str
    authorization: Optional[str]
    body: Any


class FakeBackend:
    """In-process stand-in for the auth backend, served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.users: Dict[int, Dict[str, Any]] = {}
        self.passwords: Dict[str, tuple] = {}
        self.access_tokens: Dict[str, int] = {}
        self.refresh_tokens: Dict[str, int] = {}
        self.memberships: Dict[int, List[Dict[str, Any]]] = {}
        self.calls: List[Call] = []
        # path -> status code, or "network" to raise a connection error
        self.failures: Dict[str, Any] = {}
        self.rotate_refresh = True
        self.register_returns_token = True
        self.refresh_delay = 0.0
        self.sync_delay = 0.0
        self.validate_delay = 0.0
        self._ids = itertools.count(1)
        self._tokens = itertools.count(1)

    # -- fixtures helpers ---------------------------------------------------

    def add_user(self, email: str, password: str, **fields: Any) -> Dict[str, Any]:
        user_id = fields.pop("id", None) or next(self._ids)
        user = {"id": user_id, "email": email, "username": email.split("@")[0], **fields}
        self.users[user_id] = user
        self.passwords[email] = (password, user_id)
        self.memberships.setdefault(user_id, [])
        return user

    def add_membership(self, user_id: int, timeline_id: int, **fields: Any) -> None:
        entry = {
            "timeline_id": timeline_id,
            "role": fields.pop("role", "member"),
            "is_active_member": fields.pop("is_active_member", True),
            "is_creator": fields.pop("is_creator", False),
            "is_site_owner": fields.pop("is_site_owner", False),
            "joined_at": "2024-01-01T00:00:00+00:00",
            "timeline_visibility": "public",
            **fields,
        }
        self.memberships.setdefault(user_id, []).append(entry)

    def issue(self, user_id: int) -> tuple:
        n = next(self._tokens)
        access, refresh = f"access-{user_id}-{n}", f"refresh-{user_id}-{n}"
        self.access_tokens[access] = user_id
        self.refresh_tokens[refresh] = user_id
        return access, refresh

    def expire_access_tokens(self) -> None:
        self.access_tokens.clear()

    def revoke_refresh_tokens(self) -> None:
        self.refresh_tokens.clear()

    def count(self, path: str) -> int:
        return sum(1 for call in self.calls if call.path == path)

    def calls_to(self, path: str) -> List[Call]:
        return [call for call in self.calls if call.path == path]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    # -- request handling ---------------------------------------------------

    def _bearer_user(self, request: httpx.Request) -> Optional[int]:
        header = request.headers.get("Authorization", "")
        if not header.startswith("Bearer "):
            return None
        return self.access_tokens.get(header[len("Bearer "):])

    def _passport(self, user_id: int) -> Dict[str, Any]:
        return {
            "memberships": list(self.memberships.get(user_id, [])),
            "last_updated": datetime.now(timezone.utc).isoformat(),
        }

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content) if request.content else None
        self.calls.append(Call(request.method, path, request.headers.get("Authorization"), body))

        failure = self.failures.get(path)
        if failure == "network":
            raise httpx.ConnectError("connection refused", request=request)
        if failure is not None:
            return httpx.Response(failure)

        if path == "/api/auth/login":
            email, password = (body or {}).get("email"), (body or {}).get("password")
            if not email or not password:
                return httpx.Response(400)
            stored = self.passwords.get(email)
            if stored is None or stored[0] != password:
                return httpx.Response(401, json={"error": "Invalid email or password"})
            access, refresh = self.issue(stored[1])
            return httpx.Response(
                200, json={"access_token": access, "refresh_token": refresh, **self.users[stored[1]]}
            )

        if path == "/api/auth/register":
            data = body or {}
            if not data.get("username") or not data.get("email") or not data.get("password"):
                return httpx.Response(400)
            if data["email"] in self.passwords:
                return httpx.Response(409, json={"error": "Email already registered"})
            user = self.add_user(data["email"], data["password"], username=data["username"])
            if not self.register_returns_token:
                return httpx.Response(201, json={"message": "Registered", **user})
            access, refresh = self.issue(user["id"])
            return httpx.Response(201, json={"token": access, "refresh_token": refresh, **user})

        if path == "/api/auth/refresh":
            if self.refresh_delay:
                await asyncio.sleep(self.refresh_delay)
            token = (body or {}).get("refresh_token")
            user_id = self.refresh_tokens.get(token)
            if user_id is None:
                return httpx.Response(401, json={"error": "Invalid refresh token"})
            access, refresh = self.issue(user_id)
            if not self.rotate_refresh:
                self.refresh_tokens.pop(refresh, None)
                return httpx.Response(200, json={"access_token": access})
            return httpx.Response(200, json={"access_token": access, "refresh_token": refresh})

        if path == "/api/health-check":
            return httpx.Response(200, json={"status": "ok"})

        user_id = self._bearer_user(request)
        if user_id is None:
            return httpx.Response(401, json={"error": "Token expired"})

        if path == "/api/auth/validate":
            if self.validate_delay:
                await asyncio.sleep(self.validate_delay)
            return httpx.Response(200, json={"user": self.users[user_id]})
        if path == "/api/auth/me":
            return httpx.Response(200, json=self.users[user_id])
        if path == "/api/user/passport":
            return httpx.Response(200, json=self._passport(user_id))
        if path == "/api/user/passport/sync":
            if self.sync_delay:
                await asyncio.sleep(self.sync_delay)
            return httpx.Response(200, json=self._passport(user_id))
        return httpx.Response(404)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        api_base_url=BASE_URL,
        storage_root=str(tmp_path / "store"),
        restore_delay_seconds=0,
        renewal_interval_seconds=3600,
    )


@pytest.fixture
def make_runtime(settings, backend):
    """Factory for runtimes sharing one storage root, like reopening a browser."""

    def _make(**overrides) -> Runtime:
        merged = settings.model_copy(update=overrides) if overrides else settings
        return Runtime(merged, transport=backend.transport())

    return _make


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
