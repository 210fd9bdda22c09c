"""Service layer for business logic."""
from bonsai.services.event_service import EventBroadcaster
from bonsai.services.generation_service import GenerationOrchestrator
from bonsai.services.session_service import BonsaiSession, get_bonsai_session

__all__ = ["EventBroadcaster", "GenerationOrchestrator", "BonsaiSession", "get_bonsai_session"]
