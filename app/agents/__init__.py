# =============================================================================
# Agents Package — Conversational Layer
# =============================================================================
#   - context_extractor.py: pulls customers, categories, time periods and
#     query types out of recent turns
#   - context_manager.py: per-session turns, rolling summary, TTL + LRU
#     eviction and a per-session lock
#   - reframer.py: completes follow-up questions ("2025", "what about
#     travel?") from the extracted context
#   - orchestrator.py: LangGraph loop — the model picks catalog functions
#     until it answers, times out or hits the iteration cap
# =============================================================================
