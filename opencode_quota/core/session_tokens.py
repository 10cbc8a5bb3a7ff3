"""
Session token fetching for display.

Wraps the session token summary in a result object so display code can show
either the tokens or a diagnostic without handling exceptions itself.
"""

from dataclasses import dataclass
from typing import Optional

from loguru import logger

from .aggregator import SessionTokenSummary, get_session_token_summary
from opencode_quota.storage.repository import MessageRepository, SessionNotFoundError


@dataclass(frozen=True)
class SessionTokenError:
    session_id: str
    error: str
    checked_path: Optional[str] = None


@dataclass(frozen=True)
class SessionTokenFetchResult:
    """Outcome of a session token fetch.

    Both fields are None when the feature is disabled, no session id was
    given, or the session has no assistant messages yet.
    """
    session_tokens: Optional[SessionTokenSummary] = None
    error: Optional[SessionTokenError] = None


def fetch_session_tokens_for_display(
    repository: MessageRepository,
    enabled: bool,
    session_id: Optional[str] = None
) -> SessionTokenFetchResult:
    """Fetch the per-model token summary for the current session."""
    if not enabled or not session_id:
        return SessionTokenFetchResult()

    try:
        summary = get_session_token_summary(repository, session_id)
    except SessionNotFoundError as e:
        logger.debug(f"Session tokens unavailable for {session_id}: {e.checked_path}")
        return SessionTokenFetchResult(
            error=SessionTokenError(
                session_id=e.session_id,
                error=str(e),
                checked_path=e.checked_path,
            )
        )
    except Exception as e:
        logger.warning(f"Failed to read session tokens for {session_id}: {e}")
        return SessionTokenFetchResult(
            error=SessionTokenError(session_id=session_id, error=str(e))
        )

    if not summary.models:
        return SessionTokenFetchResult()
    return SessionTokenFetchResult(session_tokens=summary)
