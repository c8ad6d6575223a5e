# =============================================================================
# Transaction Retrieval Engine
# =============================================================================
# Multi-signal embeddings and conversational retrieval over bank
# transactions. Every transaction carries five specialised embeddings
# (content, amount, date, category, combined); queries are classified to
# pick the matching one, and a chat loop lets an LLM call structured
# financial functions while follow-up questions inherit earlier context.
#
# Package structure:
#   app/
#   ├── api/          → FastAPI route handlers (chat, search, embedding admin)
#   ├── agents/       → Conversation context, question reframing and the
#   │                    LangGraph tool-use loop
#   ├── db/           → Database engine, session, and ORM models
#   ├── models/       → Pydantic V2 request/response schemas
#   ├── services/     → Classification, embedding generation, batch
#   │                    pipeline, similarity search, function catalog
#   └── workers/      → Celery task definitions and configuration
# =============================================================================
