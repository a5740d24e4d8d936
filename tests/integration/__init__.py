"""Integration tests for the awards voting client.

These tests exercise the API client, the session, the nomination
controller and the Flask front-end against FakeVotingService, an
in-process implementation of the voting service served through
httpx.MockTransport (see tests/conftest.py):

- Authentication, credential propagation and session wipe on 401
- Catalogue management and client-side validation
- Vote, revote and cancel flows including partial failures
- Flask routes, error mapping, health and metrics
"""
