"""
HTTP client for the remote awards voting service.

One method per remote operation. Every request carries the session's
credentials as HTTP Basic auth when the session has them; any 401 wipes the
session here and nowhere else.
"""
import logging
from typing import Any, Callable, Generator, List, Optional, Type, TypeVar

import httpx
from prometheus_client import Counter
from pydantic import BaseModel

from .config import Settings, settings as default_settings
from .errors import AuthError, NotFoundError, RemoteError, error_from_response
from .models import (
    Category,
    CategoryRequest,
    Credentials,
    Nominee,
    NomineeRequest,
    NomineeUpdateRequest,
    StatisticEntry,
    User,
    VotingSlot,
    VotingSlotsRequest,
    build_request,
)
from .session import SessionContext

logger = logging.getLogger(__name__)

# Prometheus metrics
api_errors = Counter(
    'awards_api_errors_total',
    'Failed calls to the voting service',
    ['error_type']
)


T = TypeVar("T")
ModelT = TypeVar("ModelT", bound=BaseModel)


def list_of(model: Type[ModelT]) -> Callable[[Any], List[ModelT]]:
    """Parser for a JSON list of ``model`` objects. An empty body is an empty list."""
    def parse(data: Any) -> List[ModelT]:
        if data is None:
            return []
        if not isinstance(data, list):
            raise TypeError(f"expected a list, got {type(data).__name__}")
        return [model.model_validate(item) for item in data]
    return parse


def parse_vote(data: Any) -> Optional[int]:
    """
    Slot id from a get-user-vote body.

    The service answers with a bare id, an object carrying ``id``, or an
    empty body when the user has not voted.
    """
    if isinstance(data, dict):
        data = data.get("id")
    if data in (None, "", 0):
        return None
    return int(data)


class SessionAuth(httpx.Auth):
    """Basic auth read from the session at request time."""

    def __init__(self, session: SessionContext):
        self.session = session

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        credentials = self.session.credentials
        if credentials:
            yield from httpx.BasicAuth(*credentials).auth_flow(request)
        else:
            yield request


class VotingApiClient:
    """Typed facade over the voting service REST API."""

    def __init__(
        self,
        session: SessionContext,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
        config: Optional[Settings] = None
    ):
        config = config or default_settings
        self.session = session
        self.client = httpx.Client(
            base_url=base_url or config.API_BASE_URL,
            timeout=timeout if timeout is not None else config.REQUEST_TIMEOUT,
            headers={"Content-Type": "application/json"},
            auth=SessionAuth(session),
            transport=transport,
        )

    def close(self):
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _send(self, method: str, path: str, json: Any = None) -> httpx.Response:
        """
        Send one request and return the successful response.

        Raises:
            AuthError: 401; the session has been cleared
            NotFoundError: 404
            RemoteError: Any other non-2xx status or transport failure
        """
        kwargs = {} if json is None else {"json": json}
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            api_errors.labels(error_type='transport').inc()
            logger.error(f"{method} {path} failed: {e}")
            raise RemoteError(None, f"Could not reach voting service: {e}") from e

        if response.is_success:
            return response

        error = error_from_response(response)
        if isinstance(error, AuthError):
            api_errors.labels(error_type='unauthorized').inc()
            logger.warning(f"{method} {path} returned 401, clearing session")
            self.session.clear(reason="unauthorized")
        elif isinstance(error, NotFoundError):
            api_errors.labels(error_type='not_found').inc()
            logger.info(f"{method} {path} returned 404: {error.message}")
        else:
            api_errors.labels(error_type='remote').inc()
            logger.error(f"{method} {path} returned {response.status_code}: {error.message}")
        raise error

    @staticmethod
    def _body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    def _request(self, method: str, path: str, json: Any = None) -> Any:
        """Send one request and return the decoded body (JSON, text or None)."""
        return self._body(self._send(method, path, json=json))

    def _fetch(self, method: str, path: str, parse: Callable[[Any], T], json: Any = None) -> T:
        """
        Send one request and parse the body into client types.

        Raises:
            RemoteError: The body does not have the expected shape, with the
                response status; plus everything ``_send`` raises
        """
        response = self._send(method, path, json=json)
        try:
            return parse(self._body(response))
        except (ValueError, TypeError) as e:
            # pydantic's ValidationError is a ValueError
            api_errors.labels(error_type='decode').inc()
            logger.error(f"{method} {path} returned an unreadable body: {e}")
            raise RemoteError(response.status_code, "Unexpected response from voting service") from e

    # Categories

    def list_categories(self) -> List[Category]:
        return self._fetch("GET", "/api/categories", list_of(Category))

    def get_category(self, category_id: int) -> Category:
        return self._fetch("GET", f"/api/categories/{category_id}", Category.model_validate)

    def create_category(self, name: str, description: Optional[str] = None, photo_url: Optional[str] = None) -> Any:
        payload = build_request(CategoryRequest, name=name, description=description, photo_url=photo_url)
        return self._request("POST", "/api/categories", json=payload.to_payload())

    def update_category(self, category_id: int, name: str, description: Optional[str] = None,
                        photo_url: Optional[str] = None) -> Any:
        payload = build_request(CategoryRequest, name=name, description=description, photo_url=photo_url)
        return self._request("PUT", f"/api/categories/{category_id}", json=payload.to_payload())

    def delete_category(self, category_id: int) -> Any:
        return self._request("DELETE", f"/api/categories/{category_id}")

    # Nominees

    def list_nominees(self) -> List[Nominee]:
        return self._fetch("GET", "/api/nominees", list_of(Nominee))

    def get_nominee(self, nominee_id: int) -> Nominee:
        return self._fetch("GET", f"/api/nominees/{nominee_id}", Nominee.model_validate)

    def create_nominee(self, category_id: Optional[int], name: str, photo_url: Optional[str] = None) -> Any:
        payload = build_request(NomineeRequest, category_id=category_id, name=name, photo_url=photo_url)
        return self._request("POST", "/api/nominees", json=payload.to_payload())

    def update_nominee(self, nominee_id: int, name: str, photo_url: Optional[str] = None) -> Any:
        payload = build_request(NomineeUpdateRequest, name=name, photo_url=photo_url)
        return self._request("PUT", f"/api/nominees/{nominee_id}", json=payload.to_payload())

    def delete_nominee(self, nominee_id: int) -> Any:
        return self._request("DELETE", f"/api/nominees/{nominee_id}")

    # Voting slots

    def list_voting_slots(self, category_id: int) -> List[VotingSlot]:
        return self._fetch("GET", f"/api/voting/{category_id}", list_of(VotingSlot))

    def create_voting_slots(self, category_id: Optional[int], nominee_ids: List[int]) -> Any:
        payload = build_request(VotingSlotsRequest, category_id=category_id, nominee_ids=nominee_ids)
        return self._request("POST", "/api/voting", json=payload.to_payload())

    def delete_voting_slot(self, slot_id: int) -> Any:
        return self._request("DELETE", f"/api/voting/{slot_id}")

    def list_unassigned_nominees(self, category_id: int) -> List[Nominee]:
        """Nominees that do not yet have a voting slot in the category."""
        taken = {slot.nominee.id for slot in self.list_voting_slots(category_id)}
        return [nominee for nominee in self.list_nominees() if nominee.id not in taken]

    # Votes

    def cast_vote(self, slot_id: int, user_id: int) -> Any:
        logger.info(f"Casting vote: slot={slot_id}, user={user_id}")
        return self._request("POST", f"/api/voting/makeVote/{slot_id}", json=user_id)

    def revoke_vote(self, category_id: int, user_id: int) -> Any:
        logger.info(f"Revoking vote: category={category_id}, user={user_id}")
        return self._request("POST", f"/api/voting/unmakeVote/{category_id}", json=user_id)

    def get_user_vote(self, category_id: int, user_id: int) -> Optional[int]:
        """
        Voting slot id the user voted for in a category.

        Returns:
            The slot id, or None when the service reports no vote

        Raises:
            NotFoundError: The service answers 404 for "no vote"
            RemoteError: Anything other than a slot id came back
        """
        return self._fetch("GET", f"/api/voting/{category_id}/{user_id}", parse_vote)

    def get_statistics(self) -> List[StatisticEntry]:
        return self._fetch("GET", "/api/voting/statistics", list_of(StatisticEntry))

    # Users

    def login(self, username: str, password: str) -> User:
        """
        Check credentials with the service.

        Raises:
            ValidationError: Blank username or password
            AuthError: Credentials rejected, with the service's message
        """
        payload = build_request(Credentials, username=username, password=password)
        try:
            return self._fetch("POST", "/api/users/login", User.model_validate, json=payload.to_payload())
        except AuthError:
            raise
        except RemoteError as e:
            if e.status_code in (400, 403, 404):
                raise AuthError(e.message, status_code=e.status_code) from e
            raise

    def register(self, username: str, password: str) -> Any:
        payload = build_request(Credentials, username=username, password=password)
        return self._request("POST", "/api/users/register", json=payload.to_payload())

    def list_users(self) -> List[User]:
        return self._fetch("GET", "/api/users", list_of(User))

    def delete_user(self, user_id: int) -> Any:
        return self._request("DELETE", f"/api/users/{user_id}")
