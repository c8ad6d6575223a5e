# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
# Each module defines a FastAPI APIRouter for a specific feature:
#   - chat.py: Conversational queries, history and context inspection
#   - search.py: Direct similarity and category search
#   - embeddings.py: Embedding recompute triggers and run status
# =============================================================================
