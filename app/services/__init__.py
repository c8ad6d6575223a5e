# =============================================================================
# Services Package — Business Logic
# =============================================================================
# Contains the core retrieval logic, separated from API handlers:
#   - classifier.py: rule-based query type → embedding column + sort key
#   - embedder.py: OpenAI-compatible embedding client
#   - embedding_generator.py: five specialised texts + vectors per record
#   - embedding_pipeline.py: paged, gated, retried batch backfill
#   - similarity_search.py: pgvector cosine ranking with filters
#   - financial_tools.py: function catalog the orchestration loop calls
#   - result_formatting.py: tagged result shapes and their text reports
#   - llm.py: Multi-provider LLM abstraction with tool calling
# =============================================================================
