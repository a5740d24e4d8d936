"""
Vote lifecycle for a single nomination (category) page.

States:

    NO_VOTE --select--> SELECTING --confirm--> VOTED --start_revote--> REVOTING
       ^                    |                    ^                       |
       +------cancel--------+                    +------confirm----------+

Selection is local until confirmed. In VOTED every selection or confirm is a
no-op until REVOTING is entered explicitly. Confirming a revote revokes the
old vote and then casts the new one; the two calls are not atomic and a
failed revoke does not stop the cast.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from prometheus_client import Counter

from .api import VotingApiClient
from .errors import AuthError, NotFoundError, RemoteError, ValidationError
from .models import Category, VotingSlot
from .results import NomineeResult, ResultsMirror, format_vote_count, nomination_results, tally_category
from .session import SessionContext
from .storage import get_storage_key

logger = logging.getLogger(__name__)

# Prometheus metrics
votes_cast = Counter(
    'awards_votes_cast_total',
    'Vote cast attempts from the client',
    ['outcome']
)
vote_revokes = Counter(
    'awards_vote_revokes_total',
    'Vote revoke attempts from the client',
    ['outcome']
)

# Seconds an in-flight marker survives a crashed request
BUSY_TTL = 30


class VoteState(str, Enum):
    """Where the user is in the vote lifecycle of one category."""
    NO_VOTE = "no_vote"
    SELECTING = "selecting"
    VOTED = "voted"
    REVOTING = "revoting"


@dataclass
class NominationView:
    """Everything a nomination page needs to render."""
    category_id: int
    category: Optional[Category]
    state: VoteState
    total: int = 0
    nominees: List[NomineeResult] = field(default_factory=list)
    selected_nominee_id: Optional[int] = None
    voted_nominee_id: Optional[int] = None
    busy: bool = False
    error: Optional[str] = None
    not_found: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.nominees

    @property
    def can_select(self) -> bool:
        return not self.busy and self.state != VoteState.VOTED and not self.is_empty

    def to_dict(self, locale: str = "ru") -> dict:
        nominees = []
        for row in self.nominees:
            data = row.to_dict(locale)
            data["selected"] = row.nominee.id == self.selected_nominee_id
            data["voted_for"] = self.state == VoteState.VOTED and row.nominee.id == self.voted_nominee_id
            nominees.append(data)

        return {
            "category_id": self.category_id,
            "category": self.category.model_dump() if self.category else None,
            "state": self.state.value,
            "total": self.total,
            "total_label": format_vote_count(self.total, locale),
            "nominees": nominees,
            "selected_nominee_id": self.selected_nominee_id,
            "voted_nominee_id": self.voted_nominee_id,
            "can_select": self.can_select,
            "busy": self.busy,
            "error": self.error,
            "empty": self.is_empty,
            "not_found": self.not_found,
        }


class NominationController:
    """Selection, confirmation, revocation and revoting for one category."""

    def __init__(
        self,
        api: VotingApiClient,
        session: SessionContext,
        mirror: ResultsMirror,
        category_id: int,
        busy_ttl: int = BUSY_TTL
    ):
        self.api = api
        self.session = session
        self.mirror = mirror
        self.category_id = category_id
        self.busy_ttl = busy_ttl
        self._busy_key = get_storage_key('busy', category_id)

        self.state = VoteState.NO_VOTE
        self.slots: List[VotingSlot] = []
        self.category: Optional[Category] = None
        self.user_vote: Optional[int] = None
        self.selected: Optional[int] = None
        self.busy = False
        self.error: Optional[str] = None
        self.not_found = False

    # Loading

    def load(self) -> "NominationController":
        """
        Fetch slots, the user's existing vote and fresh counts.

        Raises:
            AuthError: Session is no longer valid
        """
        self.error = None
        self.not_found = False
        self.state = VoteState.NO_VOTE
        self.user_vote = None
        self.selected = None
        self.busy = self.session.store.is_held(self._busy_key)

        try:
            self.slots = self.api.list_voting_slots(self.category_id)
        except NotFoundError:
            self.slots = []
            self.not_found = True
        except AuthError:
            raise
        except RemoteError as e:
            logger.error(f"Failed to load nomination {self.category_id}: {e.message}")
            self.slots = []
            self.error = e.message

        self.category = self.slots[0].category if self.slots else None
        if not self.slots:
            return self

        self._load_user_vote()
        self._refresh_counts()
        return self

    def _slot_for_nominee(self, nominee_id: int) -> Optional[VotingSlot]:
        for slot in self.slots:
            if slot.nominee.id == nominee_id:
                return slot
        return None

    def _load_user_vote(self):
        user_id = self.session.user_id
        if user_id is None:
            return

        try:
            slot_id = self.api.get_user_vote(self.category_id, user_id)
        except NotFoundError:
            slot_id = None
        except AuthError:
            raise
        except RemoteError as e:
            # Fall back to the last vote this client saw
            logger.warning(f"Could not fetch vote for category {self.category_id}: {e.message}")
            voted = self.mirror.get_voted(self.category_id)
            if voted is not None and self._slot_for_nominee(voted):
                self.user_vote = voted
                self.state = VoteState.VOTED
            return

        if slot_id is None:
            self.mirror.clear_voted(self.category_id)
            return

        slot = next((s for s in self.slots if s.id == slot_id), None)
        if slot is None:
            logger.warning(
                f"Vote in category {self.category_id} points at slot {slot_id} "
                f"which is no longer listed, showing as not voted"
            )
            self.mirror.clear_voted(self.category_id)
            return

        self.user_vote = slot.nominee.id
        self.state = VoteState.VOTED
        self.mirror.set_voted(self.category_id, slot.nominee.id)

    def _refresh_counts(self):
        try:
            entries = self.api.get_statistics()
        except AuthError:
            raise
        except RemoteError as e:
            logger.warning(f"Keeping mirrored counts for category {self.category_id}: {e.message}")
            return
        self.mirror.set(self.category_id, tally_category(entries, self.category_id))

    def _begin(self) -> bool:
        """Take the in-flight marker for this category, shared by every request of the client."""
        if not self.session.store.acquire(self._busy_key, self.busy_ttl):
            logger.info(f"Vote exchange already in flight for category {self.category_id}, ignoring")
            self.busy = True
            return False
        self.busy = True
        return True

    def _end(self):
        self.session.store.release(self._busy_key)
        self.busy = False

    def _require_user_id(self) -> int:
        user_id = self.session.user_id
        if user_id is None:
            raise AuthError("You must be logged in to vote")
        return user_id

    # Transitions

    def select(self, nominee_id: int) -> bool:
        """
        Tentatively pick a nominee. Nothing is sent.

        Returns:
            bool: False when ignored (already voted, or a call is in flight)

        Raises:
            ValidationError: Nominee is not part of this voting round
        """
        if self.busy or self.state == VoteState.VOTED:
            logger.debug(f"Ignoring selection of {nominee_id} in state {self.state.value}")
            return False
        if self._slot_for_nominee(nominee_id) is None:
            raise ValidationError("Nominee is not part of this nomination", field="nominee_id")

        self.selected = nominee_id
        if self.state != VoteState.REVOTING:
            self.state = VoteState.SELECTING
        return True

    def start_revote(self) -> bool:
        if self.busy or self.state != VoteState.VOTED:
            return False
        self.state = VoteState.REVOTING
        self.selected = None
        return True

    def confirm(self) -> bool:
        """
        Send the selected vote.

        Returns:
            bool: True once the vote is recorded; False when ignored or when
            the service rejected it (see ``error``)

        Raises:
            ValidationError: No nominee selected
            AuthError: Session is no longer valid
        """
        if self.busy or self.state == VoteState.VOTED:
            logger.debug(f"Ignoring confirm in state {self.state.value}")
            return False
        if self.selected is None:
            raise ValidationError("Select a nominee before confirming", field="nominee_id")

        slot = self._slot_for_nominee(self.selected)
        if slot is None:
            raise ValidationError("No voting slot for the selected nominee", field="nominee_id")

        user_id = self._require_user_id()
        previous = self.user_vote if self.state == VoteState.REVOTING else None

        if not self._begin():
            return False
        self.error = None
        try:
            if previous is not None:
                self._revoke_best_effort(user_id)
            self.api.cast_vote(slot.id, user_id)
        except AuthError:
            votes_cast.labels(outcome='unauthorized').inc()
            raise
        except RemoteError as e:
            votes_cast.labels(outcome='failed').inc()
            logger.warning(f"Vote in category {self.category_id} for nominee {self.selected} failed: {e.message}")
            self.error = e.message
            return False
        finally:
            self._end()

        votes_cast.labels(outcome='accepted').inc()
        self.mirror.record_vote(self.category_id, self.selected, previous)
        self.mirror.set_voted(self.category_id, self.selected)
        logger.info(f"Vote recorded: category={self.category_id}, nominee={self.selected}, previous={previous}")

        self.user_vote = self.selected
        self.selected = None
        self.state = VoteState.VOTED
        return True

    def _revoke_best_effort(self, user_id: int):
        try:
            self.api.revoke_vote(self.category_id, user_id)
            vote_revokes.labels(outcome='accepted').inc()
        except AuthError:
            raise
        except RemoteError as e:
            vote_revokes.labels(outcome='failed').inc()
            logger.warning(
                f"Revoke before revote failed in category {self.category_id}, casting anyway: {e.message}"
            )

    def cancel(self) -> bool:
        """
        Back out of a selection.

        Cancelling a revote after picking a new nominee withdraws the
        existing vote on the service; once that succeeds there is no vote
        to return to.
        """
        if self.busy:
            return False

        if self.state == VoteState.SELECTING:
            self.selected = None
            self.state = VoteState.NO_VOTE
            return True

        if self.state != VoteState.REVOTING:
            return False

        if self.selected is None:
            self.state = VoteState.VOTED
            return True

        user_id = self._require_user_id()
        if not self._begin():
            return False
        self.error = None
        try:
            self.api.revoke_vote(self.category_id, user_id)
        except AuthError:
            raise
        except RemoteError as e:
            vote_revokes.labels(outcome='failed').inc()
            logger.warning(f"Revoke in category {self.category_id} failed: {e.message}")
            self.error = e.message
            self.selected = None
            self.state = VoteState.VOTED
            return False
        finally:
            self._end()

        vote_revokes.labels(outcome='accepted').inc()
        if self.user_vote is not None:
            self.mirror.record_revoke(self.category_id, self.user_vote)
        self.mirror.clear_voted(self.category_id)
        logger.info(f"Vote withdrawn: category={self.category_id}, nominee={self.user_vote}")

        self.user_vote = None
        self.selected = None
        self.state = VoteState.NO_VOTE
        return True

    def dismiss_error(self):
        self.error = None

    # Persistence of local-only state between requests

    def snapshot(self) -> dict:
        return {"state": self.state.value, "selected": self.selected, "error": self.error}

    def restore(self, data: Optional[dict]) -> "NominationController":
        """
        Re-apply a snapshot on top of freshly loaded server state.

        Only local choices and an undismissed error are restored; whether
        the user has voted always comes from the service.
        """
        if not data:
            return self

        if self.error is None and data.get("error"):
            self.error = data["error"]

        selected = data.get("selected")
        if selected is not None and self._slot_for_nominee(selected) is None:
            selected = None

        saved = data.get("state")
        if self.state == VoteState.VOTED and saved == VoteState.REVOTING.value:
            self.state = VoteState.REVOTING
            self.selected = selected
        elif self.state == VoteState.NO_VOTE and saved == VoteState.SELECTING.value and selected is not None:
            self.state = VoteState.SELECTING
            self.selected = selected
        return self

    def view(self) -> NominationView:
        total, rows = nomination_results(self.slots, self.mirror.get(self.category_id))
        return NominationView(
            category_id=self.category_id,
            category=self.category,
            state=self.state,
            total=total,
            nominees=rows,
            selected_nominee_id=self.selected,
            voted_nominee_id=self.user_vote,
            busy=self.busy,
            error=self.error,
            not_found=self.not_found,
        )
