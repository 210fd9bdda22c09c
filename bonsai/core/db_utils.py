"""Database utility functions for persisting the Bonsai state blob."""
import json
import logging
from typing import Any, Callable, Dict, Optional, Tuple
from sqlalchemy.orm import Session
from bonsai.models import StateBlob

logger = logging.getLogger(__name__)

STORAGE_KEY = "bonsai.state.v1"


def _close(db: Optional[Session]) -> None:
    # Test fixtures hand out one shared session and close it themselves
    if db is not None and not hasattr(db, '_test_session_reuse'):
        try:
            db.close()
        except Exception as e:
            logger.debug(f"Error closing session: {e}")


def save_state_blob(
    db_session_factory: Callable[[], Session],
    session_id: str,
    payload: Dict[str, Any],
    key: str = STORAGE_KEY
) -> bool:
    """
    Upsert the state blob for a key.

    Args:
        db_session_factory: Factory function that returns a database session
        session_id: Runtime session writing the blob
        payload: JSON-serializable state document
        key: Storage key

    Returns:
        True if successful, False otherwise
    """
    db = None
    try:
        db = db_session_factory()
        content = json.dumps(payload)

        blob = db.query(StateBlob).filter(StateBlob.key == key).first()
        if blob is None:
            blob = StateBlob(key=key, session_id=session_id, payload=content)
            db.add(blob)
        else:
            blob.session_id = session_id
            blob.payload = content

        db.commit()
        logger.debug(f"Persisted state blob '{key}' ({len(content)} bytes) for session {session_id}")
        return True

    except Exception as e:
        logger.error(f"Error persisting state blob '{key}': {e}", exc_info=True)
        if db:
            try:
                db.rollback()
            except Exception:
                logger.debug("Rollback failed", exc_info=True)
        return False
    finally:
        _close(db)


def load_state_blob(
    db_session_factory: Callable[[], Session],
    key: str = STORAGE_KEY
) -> Optional[Tuple[str, Dict[str, Any]]]:
    """
    Load the state blob for a key.

    Args:
        db_session_factory: Factory function that returns a database session
        key: Storage key

    Returns:
        Tuple of (session_id, payload) if a readable blob exists, None otherwise
    """
    db = None
    try:
        db = db_session_factory()
        db.expire_all()

        blob = db.query(StateBlob).filter(StateBlob.key == key).first()
        if blob is None:
            return None

        payload = json.loads(blob.payload)
        if not isinstance(payload, dict):
            logger.warning(f"State blob '{key}' is not a JSON object, ignoring it")
            return None

        return blob.session_id, payload

    except json.JSONDecodeError as e:
        logger.warning(f"State blob '{key}' is not valid JSON: {e}")
        return None
    except Exception as e:
        logger.error(f"Error loading state blob '{key}': {e}", exc_info=True)
        return None
    finally:
        _close(db)


def clear_state_blob(
    db_session_factory: Callable[[], Session],
    key: str = STORAGE_KEY
) -> bool:
    """
    Delete the state blob for a key.

    Returns:
        True if a row was deleted, False otherwise
    """
    db = None
    try:
        db = db_session_factory()
        deleted = db.query(StateBlob).filter(StateBlob.key == key).delete()
        db.commit()
        return deleted > 0
    except Exception as e:
        logger.error(f"Error clearing state blob '{key}': {e}", exc_info=True)
        if db:
            try:
                db.rollback()
            except Exception:
                logger.debug("Rollback failed", exc_info=True)
        return False
    finally:
        _close(db)
