"""Pytest fixtures for the awards voting client tests.

The remote voting service is replaced by FakeVotingService, an in-process
stand-in served through httpx.MockTransport. It keeps categories, nominees,
voting slots, users and votes in dicts, checks HTTP Basic credentials on
every call except login/register, and records every request so tests can
assert on what was (or was not) sent.
"""

import base64
import itertools
import json
import re
from typing import Dict, List, Optional, Tuple

import httpx
import pytest

from awards_voting.api import VotingApiClient
from awards_voting.app import create_app
from awards_voting.config import Settings
from awards_voting.results import ResultsMirror
from awards_voting.session import SessionContext
from awards_voting.storage import MemoryStore
from awards_voting.voting import NominationController

BASE_URL = "http://voting.test"


class FakeVotingService:
    """Minimal in-memory implementation of the voting service REST API."""

    def __init__(self):
        self.categories: Dict[int, dict] = {
            1: {"id": 1, "name": "Best Student", "description": "Top of the class", "photoUrl": None},
            2: {"id": 2, "name": "Meme of the Year", "description": None,
                "photoUrl": "https://example.com/meme.jpg"},
            3: {"id": 3, "name": "Best Couple", "description": None, "photoUrl": None},
        }
        self.nominees: Dict[int, dict] = {
            10: {"id": 10, "name": "Anna", "photoUrl": None, "category": 1},
            11: {"id": 11, "name": "Boris", "photoUrl": None, "category": 1},
            12: {"id": 12, "name": "Dancing Cat", "photoUrl": None, "category": 2},
            13: {"id": 13, "name": "Vera", "photoUrl": None, "category": 1},
        }
        # slot id -> (category id, nominee id)
        self.slots: Dict[int, Tuple[int, int]] = {
            100: (1, 10),
            101: (1, 11),
            200: (2, 12),
        }
        self.users: Dict[int, dict] = {
            1: {"id": 1, "username": "alice", "password": "secret", "role": "USER"},
            2: {"id": 2, "username": "admin", "password": "admin-pass", "role": "ADMIN"},
        }
        # (user id, category id) -> slot id
        self.votes: Dict[Tuple[int, int], int] = {}
        # Additional raw statistic rows appended to the computed ones
        self.extra_statistics: List[dict] = []
        self.reject_second_vote = True

        self.requests: List[httpx.Request] = []
        self._failures: Dict[Tuple[str, str], List[httpx.Response]] = {}
        self._ids = itertools.count(1000)

        self._routes = [
            ("POST", r"/api/users/login", self._login, False),
            ("POST", r"/api/users/register", self._register, False),
            ("GET", r"/api/users", self._list_users, True),
            ("DELETE", r"/api/users/(\d+)", self._delete_user, True),
            ("GET", r"/api/categories", self._list_categories, True),
            ("POST", r"/api/categories", self._create_category, True),
            ("GET", r"/api/categories/(\d+)", self._get_category, True),
            ("PUT", r"/api/categories/(\d+)", self._update_category, True),
            ("DELETE", r"/api/categories/(\d+)", self._delete_category, True),
            ("GET", r"/api/nominees", self._list_nominees, True),
            ("POST", r"/api/nominees", self._create_nominee, True),
            ("GET", r"/api/nominees/(\d+)", self._get_nominee, True),
            ("PUT", r"/api/nominees/(\d+)", self._update_nominee, True),
            ("DELETE", r"/api/nominees/(\d+)", self._delete_nominee, True),
            ("GET", r"/api/voting/statistics", self._statistics, True),
            ("POST", r"/api/voting/makeVote/(\d+)", self._make_vote, True),
            ("POST", r"/api/voting/unmakeVote/(\d+)", self._unmake_vote, True),
            ("GET", r"/api/voting/(\d+)/(\d+)", self._get_vote, True),
            ("GET", r"/api/voting/(\d+)", self._list_slots, True),
            ("POST", r"/api/voting", self._create_slots, True),
            ("DELETE", r"/api/voting/(\d+)", self._delete_slot, True),
        ]

    # Test helpers

    @property
    def calls(self) -> List[Tuple[str, str]]:
        return [(r.method, r.url.path) for r in self.requests]

    def calls_to(self, prefix: str) -> List[Tuple[str, str]]:
        return [call for call in self.calls if call[1].startswith(prefix)]

    def fail(self, method: str, path: str, status: int = 500, message: Optional[str] = "Internal server error",
             times: int = 1, text: Optional[str] = None):
        """Answer the next ``times`` calls to (method, path) with an error."""
        if text is not None:
            response = httpx.Response(status, text=text)
        elif message is None:
            response = httpx.Response(status)
        else:
            response = httpx.Response(status, json={"message": message})
        self._failures.setdefault((method, path), []).extend([response] * times)

    # Transport entry point

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        pending = self._failures.get((request.method, path))
        if pending:
            return pending.pop(0)

        for method, pattern, handler, needs_auth in self._routes:
            if method != request.method:
                continue
            match = re.fullmatch(pattern, path)
            if not match:
                continue
            if needs_auth and self._authenticate(request) is None:
                return httpx.Response(401, json={"message": "Unauthorized"})
            body = json.loads(request.content) if request.content else None
            return handler(body, *(int(g) for g in match.groups()))

        return httpx.Response(404, json={"message": f"No route for {request.method} {path}"})

    def _authenticate(self, request: httpx.Request) -> Optional[dict]:
        header = request.headers.get("Authorization", "")
        if not header.startswith("Basic "):
            return None
        username, _, password = base64.b64decode(header[6:]).decode().partition(":")
        for user in self.users.values():
            if user["username"] == username and user["password"] == password:
                return user
        return None

    # Serialization

    def _category(self, category_id: int) -> dict:
        return dict(self.categories[category_id])

    def _nominee(self, nominee_id: int) -> dict:
        nominee = dict(self.nominees[nominee_id])
        category_id = nominee.pop("category")
        nominee["category"] = self._category(category_id) if category_id in self.categories else None
        return nominee

    def _slot(self, slot_id: int) -> dict:
        category_id, nominee_id = self.slots[slot_id]
        return {"id": slot_id, "category": self._category(category_id), "nominee": self._nominee(nominee_id)}

    @staticmethod
    def _public_user(user: dict) -> dict:
        return {"id": user["id"], "username": user["username"], "role": user["role"]}

    # Users

    def _login(self, body):
        for user in self.users.values():
            if user["username"] == body.get("username") and user["password"] == body.get("password"):
                return httpx.Response(200, json=self._public_user(user))
        return httpx.Response(401, json={"message": "Invalid username or password"})

    def _register(self, body):
        if any(u["username"] == body.get("username") for u in self.users.values()):
            return httpx.Response(400, json={"message": "Username already taken"})
        user_id = next(self._ids)
        self.users[user_id] = {"id": user_id, "username": body["username"],
                               "password": body["password"], "role": "USER"}
        return httpx.Response(200, json=self._public_user(self.users[user_id]))

    def _list_users(self, body):
        return httpx.Response(200, json=[self._public_user(u) for u in self.users.values()])

    def _delete_user(self, body, user_id):
        if self.users.pop(user_id, None) is None:
            return httpx.Response(404, json={"message": "User not found"})
        return httpx.Response(200)

    # Categories

    def _list_categories(self, body):
        return httpx.Response(200, json=[self._category(c) for c in self.categories])

    def _create_category(self, body):
        category_id = next(self._ids)
        self.categories[category_id] = {"id": category_id, "name": body["name"],
                                        "description": body.get("description"), "photoUrl": body.get("photoUrl")}
        return httpx.Response(200, json=self._category(category_id))

    def _get_category(self, body, category_id):
        if category_id not in self.categories:
            return httpx.Response(404, json={"message": "Category not found"})
        return httpx.Response(200, json=self._category(category_id))

    def _update_category(self, body, category_id):
        if category_id not in self.categories:
            return httpx.Response(404, json={"message": "Category not found"})
        self.categories[category_id].update(
            name=body["name"], description=body.get("description"), photoUrl=body.get("photoUrl"))
        return httpx.Response(200, json=self._category(category_id))

    def _delete_category(self, body, category_id):
        if self.categories.pop(category_id, None) is None:
            return httpx.Response(404, json={"message": "Category not found"})
        return httpx.Response(200)

    # Nominees

    def _list_nominees(self, body):
        return httpx.Response(200, json=[self._nominee(n) for n in self.nominees])

    def _create_nominee(self, body):
        nominee_id = next(self._ids)
        self.nominees[nominee_id] = {"id": nominee_id, "name": body["name"],
                                     "photoUrl": body.get("photoUrl"), "category": body["categoryId"]}
        return httpx.Response(200, json=self._nominee(nominee_id))

    def _get_nominee(self, body, nominee_id):
        if nominee_id not in self.nominees:
            return httpx.Response(404, json={"message": "Nominee not found"})
        return httpx.Response(200, json=self._nominee(nominee_id))

    def _update_nominee(self, body, nominee_id):
        if nominee_id not in self.nominees:
            return httpx.Response(404, json={"message": "Nominee not found"})
        self.nominees[nominee_id].update(name=body["name"], photoUrl=body.get("photoUrl"))
        return httpx.Response(200, json=self._nominee(nominee_id))

    def _delete_nominee(self, body, nominee_id):
        if self.nominees.pop(nominee_id, None) is None:
            return httpx.Response(404, json={"message": "Nominee not found"})
        return httpx.Response(200)

    # Voting

    def _list_slots(self, body, category_id):
        return httpx.Response(200, json=[
            self._slot(slot_id) for slot_id, (cat, _) in self.slots.items() if cat == category_id
        ])

    def _create_slots(self, body):
        created = []
        for nominee_id in body["nomineeIds"]:
            slot_id = next(self._ids)
            self.slots[slot_id] = (body["categoryId"], nominee_id)
            created.append(self._slot(slot_id))
        return httpx.Response(200, json=created)

    def _delete_slot(self, body, slot_id):
        if self.slots.pop(slot_id, None) is None:
            return httpx.Response(404, json={"message": "Voting not found"})
        return httpx.Response(200)

    def _make_vote(self, body, slot_id):
        if slot_id not in self.slots:
            return httpx.Response(404, json={"message": "Voting not found"})
        category_id, _ = self.slots[slot_id]
        key = (int(body), category_id)
        if key in self.votes and self.reject_second_vote:
            return httpx.Response(409, json={"message": "User has already voted in this category"})
        self.votes[key] = slot_id
        return httpx.Response(200)

    def _unmake_vote(self, body, category_id):
        self.votes.pop((int(body), category_id), None)
        return httpx.Response(200)

    def _get_vote(self, body, category_id, user_id):
        slot_id = self.votes.get((user_id, category_id))
        if slot_id is None:
            return httpx.Response(200)
        return httpx.Response(200, json=slot_id)

    def _statistics(self, body):
        rows = []
        for slot_id in self.slots:
            count = sum(1 for voted in self.votes.values() if voted == slot_id)
            rows.append({**self._slot(slot_id), "count": count})
        return httpx.Response(200, json=rows + self.extra_statistics)


@pytest.fixture
def fake_service() -> FakeVotingService:
    """Fresh fake voting service per test."""
    return FakeVotingService()


@pytest.fixture
def transport(fake_service: FakeVotingService) -> httpx.MockTransport:
    return httpx.MockTransport(fake_service.handle)


@pytest.fixture
def store() -> MemoryStore:
    """Root local storage shared by everything in one test."""
    return MemoryStore("awards")


@pytest.fixture
def session_ctx(store: MemoryStore) -> SessionContext:
    return SessionContext(store.scoped("browser-1"))


@pytest.fixture
def api_client(session_ctx: SessionContext, transport: httpx.MockTransport):
    """API client talking to the fake service."""
    client = VotingApiClient(session_ctx, base_url=BASE_URL, transport=transport)
    yield client
    client.close()


@pytest.fixture
def logged_in(session_ctx: SessionContext, api_client: VotingApiClient) -> SessionContext:
    """Session logged in as the ordinary user 'alice' (id 1)."""
    session_ctx.login(api_client, "alice", "secret")
    return session_ctx


@pytest.fixture
def mirror(session_ctx: SessionContext) -> ResultsMirror:
    return ResultsMirror(session_ctx.store)


@pytest.fixture
def make_controller(api_client, logged_in, mirror):
    """Factory for loaded nomination controllers as 'alice'."""
    def _make(category_id: int = 1) -> NominationController:
        return NominationController(api_client, logged_in, mirror, category_id).load()

    return _make


@pytest.fixture
def app(store: MemoryStore, transport: httpx.MockTransport):
    """Flask app wired to the fake service."""
    config = Settings(
        API_BASE_URL=BASE_URL,
        SECRET_KEY="test-secret",
        STORAGE_URL="memory://",
        LOCALE="ru",
    )
    flask_app = create_app(config, store=store, transport=transport)
    flask_app.config['TESTING'] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers",
        "unit: pure logic tests without any transport"
    )
    config.addinivalue_line(
        "markers",
        "integration: tests running against the in-process fake voting service"
    )
