"""
Client for the awards voting service.

This package contains:
- VotingApiClient: typed facade over the service REST API
- SessionContext: logged-in identity cached in local storage
- NominationController: vote lifecycle of one category (select, confirm, revote)
- Results aggregation and the per-category results mirror
- create_app: Flask JSON front-end wiring the above together
"""

from .api import VotingApiClient
from .errors import AuthError, NotFoundError, RemoteError, ValidationError, VotingClientError
from .models import Category, Nominee, Role, StatisticEntry, User, VotingSlot
from .results import (
    CategoryResults,
    NomineeResult,
    ResultsMirror,
    aggregate_statistics,
    format_vote_count,
    nomination_results,
    percentage,
    tally_category,
)
from .session import SessionContext
from .storage import KeyValueStore, MemoryStore, RedisStore, open_store
from .voting import NominationController, NominationView, VoteState

__all__ = [
    'VotingApiClient',
    'AuthError',
    'NotFoundError',
    'RemoteError',
    'ValidationError',
    'VotingClientError',
    'Category',
    'Nominee',
    'Role',
    'StatisticEntry',
    'User',
    'VotingSlot',
    'CategoryResults',
    'NomineeResult',
    'ResultsMirror',
    'aggregate_statistics',
    'format_vote_count',
    'nomination_results',
    'percentage',
    'tally_category',
    'SessionContext',
    'KeyValueStore',
    'MemoryStore',
    'RedisStore',
    'open_store',
    'NominationController',
    'NominationView',
    'VoteState',
]

__version__ = '1.0.0'
