"""Session/identity holder backed by client-local storage."""
import logging
from typing import TYPE_CHECKING, Optional, Tuple

from .models import Role, User
from .storage import KeyValueStore, get_storage_key

if TYPE_CHECKING:
    from .api import VotingApiClient

logger = logging.getLogger(__name__)

SESSION_KEY = get_storage_key('session')


class SessionContext:
    """
    Logged-in identity for one client.

    Built once per client and handed to the API client and the nomination
    controllers. ``clear()`` is the single teardown; it empties the whole
    storage namespace, results mirror included.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    def _data(self) -> dict:
        data = self.store.get_json(SESSION_KEY, {})
        return data if isinstance(data, dict) else {}

    def is_authenticated(self) -> bool:
        return self._data().get("id") is not None

    def current_user(self) -> Optional[User]:
        data = self._data()
        if data.get("id") is None:
            return None
        return User(
            id=data["id"],
            username=data.get("username", ""),
            role=data.get("role") or Role.USER,
        )

    def is_admin(self) -> bool:
        user = self.current_user()
        return user is not None and user.is_admin

    @property
    def user_id(self) -> Optional[int]:
        return self._data().get("id")

    @property
    def credentials(self) -> Optional[Tuple[str, str]]:
        """(username, credential) pair for transport auth, if logged in."""
        data = self._data()
        username = data.get("username")
        credential = data.get("credential")
        if username and credential:
            return username, credential
        return None

    def login(self, api: "VotingApiClient", username: str, password: str) -> User:
        """
        Authenticate against the service and persist the identity.

        Args:
            api: Client used for the login call
            username: Username
            password: Password, kept as the transport credential

        Returns:
            User: The authenticated user

        Raises:
            ValidationError: Blank username or password
            AuthError: Bad credentials (message from the service)
        """
        user = api.login(username, password)
        self.store.set_json(SESSION_KEY, {
            "id": user.id,
            "username": user.username,
            "role": user.role.value,
            "credential": password,
        })
        logger.info(f"User logged in: id={user.id}, username={user.username}, role={user.role.value}")
        return user

    def logout(self) -> None:
        self.clear(reason="logout")

    def clear(self, reason: str = "cleared") -> None:
        """Drop every cached identity field and the results mirror."""
        self.store.clear()
        logger.info(f"Session cleared ({reason})")
