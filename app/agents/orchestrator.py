# =============================================================================
# LangGraph Orchestrator — Conversational Tool-Use Loop
# =============================================================================
#
# Answers one chat message by letting the model pick structured functions
# from the catalog until it can reply in text.
#
# GRAPH TOPOLOGY:
#
#   START ─▶ reframe ─┬─▶ knowledge ─────────────────────────┐
#                     │                                       ▼
#                     └─▶ decide ─┬─▶ invoke ─┬─▶ decide ...  finalize ─▶ END
#                                 │           │               ▲
#                                 └───────────┴───────────────┘
#
# LOOP STATES:
#   AWAIT_DECISION → the next node asks the model what to do
#   INVOKING       → the model picked a function; invoke runs it
#   RESPONDING     → final text produced                    (terminal)
#   TIMED_OUT      → model or function exceeded its budget  (terminal)
#   CAPPED_OUT     → iteration cap reached                  (terminal)
#   ERRORED        → unknown function or failing dependency (terminal)
#
# DESIGN DECISION: Conditional edges carry the state machine. Every
# terminal state routes to `finalize`, which records the turn pair and
# folds it into the session summary, so every outcome (including failures)
# lands in session history.
#
# DESIGN DECISION: Results re-enter the conversation as plain text (an
# assistant message naming the call, then a user message with the
# formatted report). Both providers accept that shape, so no
# vendor-specific tool_result plumbing reaches this module.
#
# DESIGN DECISION: A timeout is never retried within the same request.
# Provider and database calls may still finish server-side; only our wait
# is abandoned.
#
# DESIGN DECISION: After a function returns zero rows, a fixed steering
# message is appended and the next decision is made WITHOUT tools, so the
# model explains the empty result instead of trying another function.
# =============================================================================

from __future__ import annotations

import asyncio
import enum
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from app.agents.context_manager import ContextManager, Turn, get_context_manager
from app.agents.reframer import reframe
from app.config import settings
from app.db.engine import async_session_factory
from app.errors import (
    FunctionNotFoundError,
    ProviderError,
    ReadOnlyQueryError,
    StoreError,
    ToolTimeoutError,
)
from app.services.embedder import get_embedding_provider
from app.services.financial_tools import (
    CATALOG,
    ToolContext,
    invoke_tool,
    tool_definitions,
)
from app.services.llm import LLMProvider, ToolCall, get_llm_provider
from app.services.result_formatting import format_result, row_count

logger = logging.getLogger(__name__)


class LoopState(str, enum.Enum):
    AWAIT_DECISION = "await_decision"
    INVOKING = "invoking"
    RESPONDING = "responding"
    TIMED_OUT = "timed_out"
    CAPPED_OUT = "capped_out"
    ERRORED = "errored"


TERMINAL_STATES = frozenset({
    LoopState.RESPONDING,
    LoopState.TIMED_OUT,
    LoopState.CAPPED_OUT,
    LoopState.ERRORED,
})

KNOWLEDGE_TRIGGERS = (
    "most relevant expense categories for",
    "typical expenses for",
    "what are typical expenses",
    "what expenses do companies",
    "what should a company budget for",
    "typical costs for this type of business",
    "business description",
    "kvk",
    "industry",
    "sector",
    "type of business",
    "business model",
    "operational costs",
    "overhead expenses",
    "business operations",
)

NO_RESULTS_MESSAGE = (
    "The function {name} returned no results for these arguments. Do not "
    "call another function. Tell the user that no matching data was found "
    "and suggest how to widen the question (another period, category or "
    "customer)."
)
TOOL_NOT_FOUND_MESSAGE = (
    "The tool '{name}' was not found, so I could not complete this request. "
    "Please rephrase your question."
)
TIMEOUT_MESSAGE = (
    "The request timed out after {seconds:g} seconds while {activity}. "
    "Please try again or narrow the question."
)
CAPPED_OUT_MESSAGE = (
    "I could not finish this request within {limit} steps. Please rephrase "
    "the question or make it more specific."
)
STORE_ERROR_MESSAGE = (
    "A database error occurred while running {name}. Please try again later."
)
PROVIDER_ERROR_MESSAGE = (
    "The embedding service failed while running {name}. Please try again "
    "later."
)
UNEXPECTED_ERROR_MESSAGE = (
    "An error occurred while running {name}: {error}. Please rephrase the "
    "question."
)
MODEL_ERROR_MESSAGE = (
    "The language model could not be reached. Please try again later."
)

KNOWLEDGE_SYSTEM_PROMPT = """You are a financial analyst who advises small businesses.

Answer from general business knowledge: typical expense categories, industry
cost structures, budgeting norms and what kinds of companies do. You have no
access to the user's transactions in this mode, so never state figures about
their own books. Be concise and practical."""


# ---------------------------------------------------------------------------
# Graph State
# ---------------------------------------------------------------------------


class LoopGraphState(TypedDict, total=False):
    """
    State flowing through the orchestration graph.

    total=False so nodes only return the keys they update.
    """

    # --- Input ---
    query: str
    session_id: str
    llm: LLMProvider            # not serialisable; no checkpointer is used
    tool_context: ToolContext

    # --- Set by reframe ---
    reframed_query: str
    route: str                  # "knowledge" | "tools"
    system_prompt: str
    messages: list[dict[str, str]]

    # --- Loop bookkeeping ---
    loop_state: LoopState
    iterations: int
    tools_enabled: bool
    pending_call: ToolCall | None
    trace: list[dict[str, Any]]

    # --- Output ---
    response: str
    model: str | None
    input_tokens: int
    output_tokens: int


@dataclass
class OrchestrationResult:
    response: str
    session_id: str
    state: LoopState
    reframed_query: str
    iterations: int
    route: str
    trace: list[dict[str, Any]] = field(default_factory=list)
    model: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Orchestrator:
    """
    Runs the tool-use loop for chat messages.

    Args:
        context_manager: Session store (defaults to the process singleton).
        tool_context: Session factory + embedder handed to catalog functions.
        llm: Model provider (defaults to the configured singleton).
    """

    def __init__(
        self,
        context_manager: ContextManager | None = None,
        tool_context: ToolContext | None = None,
        llm: LLMProvider | None = None,
        max_iterations: int | None = None,
        model_timeout_seconds: float | None = None,
        tool_timeout_seconds: float | None = None,
    ) -> None:
        # An empty store is falsy (it has __len__), so test against None
        self._store = (
            context_manager if context_manager is not None
            else get_context_manager()
        )
        self._tool_context = tool_context
        self._llm = llm
        self._max_iterations = (
            max_iterations or settings.orchestrator_max_iterations
        )
        self._model_timeout = (
            model_timeout_seconds or settings.model_timeout_seconds
        )
        self._tool_timeout = tool_timeout_seconds or settings.tool_timeout_seconds
        self._graph = self._build_graph()

    async def process(
        self,
        query: str,
        session_id: str | None = None,
    ) -> OrchestrationResult:
        """
        Answer one message within a session.

        Overlapping calls for the same session run one after another.

        Raises:
            ValueError: If no LLM provider is configured.
        """
        session_id = session_id or generate_session_id()
        llm = self._llm or get_llm_provider()
        tool_context = self._tool_context or ToolContext(
            session_factory=async_session_factory,
            embedder=get_embedding_provider(),
        )

        logger.info(
            "Processing query for %s: '%s'", session_id, query[:80],
        )

        async with self._store.lock(session_id):
            final = await self._graph.ainvoke(
                {
                    "query": query,
                    "session_id": session_id,
                    "llm": llm,
                    "tool_context": tool_context,
                },
                config={"recursion_limit": 4 * self._max_iterations + 10},
            )

        logger.info(
            "Query for %s finished: state=%s, iterations=%d",
            session_id, final["loop_state"].value, final.get("iterations", 0),
        )

        return OrchestrationResult(
            response=final["response"],
            session_id=session_id,
            state=final["loop_state"],
            reframed_query=final["reframed_query"],
            iterations=final.get("iterations", 0),
            route=final["route"],
            trace=final.get("trace", []),
            model=final.get("model"),
            input_tokens=final.get("input_tokens", 0),
            output_tokens=final.get("output_tokens", 0),
        )

    # --- graph ---

    def _build_graph(self):
        builder = StateGraph(LoopGraphState)
        builder.add_node("reframe", self._reframe_node)
        builder.add_node("knowledge", self._knowledge_node)
        builder.add_node("decide", self._decide_node)
        builder.add_node("invoke", self._invoke_node)
        builder.add_node("finalize", self._finalize_node)

        builder.add_edge(START, "reframe")
        builder.add_conditional_edges(
            "reframe", _route_after_reframe,
            {"knowledge": "knowledge", "decide": "decide"},
        )
        builder.add_edge("knowledge", "finalize")
        builder.add_conditional_edges(
            "decide", _route_after_decide,
            {"invoke": "invoke", "finalize": "finalize"},
        )
        builder.add_conditional_edges(
            "invoke", _route_after_invoke,
            {"decide": "decide", "finalize": "finalize"},
        )
        builder.add_edge("finalize", END)
        return builder.compile()

    # --- nodes ---

    async def _reframe_node(self, state: LoopGraphState) -> dict:
        session_id = state["session_id"]
        reframed = reframe(state["query"], self._store.get_context(session_id))
        history = build_history_messages(self._store.get_turns(session_id))
        route = "knowledge" if is_knowledge_query(reframed) else "tools"
        return {
            "reframed_query": reframed,
            "route": route,
            "system_prompt": build_system_prompt(
                self._store.get_summary(session_id),
            ),
            "messages": history + [{"role": "user", "content": reframed}],
            "loop_state": LoopState.AWAIT_DECISION,
            "iterations": 0,
            "tools_enabled": True,
            "pending_call": None,
            "trace": [],
            "input_tokens": 0,
            "output_tokens": 0,
        }

    async def _knowledge_node(self, state: LoopGraphState) -> dict:
        try:
            response = await asyncio.wait_for(
                state["llm"].complete(
                    state["messages"], system=KNOWLEDGE_SYSTEM_PROMPT,
                ),
                timeout=self._model_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Knowledge answer timed out")
            return _timed_out(self._model_timeout, "waiting for the model")
        except Exception:
            logger.exception("Knowledge answer failed")
            return {
                "loop_state": LoopState.ERRORED,
                "response": MODEL_ERROR_MESSAGE,
            }

        return {
            "loop_state": LoopState.RESPONDING,
            "response": response.content,
            "model": response.model,
            "input_tokens": response.input_tokens,
            "output_tokens": response.output_tokens,
        }

    async def _decide_node(self, state: LoopGraphState) -> dict:
        iterations = state.get("iterations", 0)
        if iterations >= self._max_iterations:
            logger.warning(
                "Iteration cap (%d) reached for %s",
                self._max_iterations, state["session_id"],
            )
            return {
                "loop_state": LoopState.CAPPED_OUT,
                "response": CAPPED_OUT_MESSAGE.format(
                    limit=self._max_iterations,
                ),
            }

        tools = tool_definitions() if state.get("tools_enabled", True) else None
        try:
            decision = await asyncio.wait_for(
                state["llm"].decide(
                    state["messages"],
                    system=state["system_prompt"],
                    tools=tools,
                ),
                timeout=self._model_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Model decision timed out (iteration %d)", iterations + 1)
            return {
                "iterations": iterations + 1,
                **_timed_out(self._model_timeout, "waiting for the model"),
            }
        except Exception:
            logger.exception("Model decision failed")
            return {
                "iterations": iterations + 1,
                "loop_state": LoopState.ERRORED,
                "response": MODEL_ERROR_MESSAGE,
            }

        update: dict = {
            "iterations": iterations + 1,
            "model": decision.model,
            "input_tokens": state.get("input_tokens", 0) + decision.input_tokens,
            "output_tokens": (
                state.get("output_tokens", 0) + decision.output_tokens
            ),
        }
        if decision.tool_call is not None:
            update["loop_state"] = LoopState.INVOKING
            update["pending_call"] = decision.tool_call
        else:
            update["loop_state"] = LoopState.RESPONDING
            update["response"] = (
                decision.text.strip() or "I could not produce an answer."
            )
        return update

    async def _invoke_node(self, state: LoopGraphState) -> dict:
        call: ToolCall = state["pending_call"]
        entry: dict[str, Any] = {
            "iteration": state.get("iterations", 0),
            "tool": call.name,
            "arguments": call.arguments,
        }
        trace = state.get("trace", []) + [entry]
        call_message = {
            "role": "assistant",
            "content": (
                f"Calling function {call.name} with arguments "
                f"{json.dumps(call.arguments, default=str)}"
            ),
        }

        try:
            result = await asyncio.wait_for(
                invoke_tool(state["tool_context"], call.name, call.arguments),
                timeout=self._tool_timeout,
            )
        except FunctionNotFoundError:
            logger.warning("Model selected unknown function '%s'", call.name)
            entry["outcome"] = "not_found"
            return {
                "trace": trace,
                "pending_call": None,
                "loop_state": LoopState.ERRORED,
                "response": TOOL_NOT_FOUND_MESSAGE.format(name=call.name),
            }
        except (asyncio.TimeoutError, ToolTimeoutError):
            logger.warning("Function %s timed out", call.name)
            entry["outcome"] = "timeout"
            return {
                "trace": trace,
                "pending_call": None,
                **_timed_out(self._tool_timeout, f"running {call.name}"),
            }
        except ReadOnlyQueryError as exc:
            entry["outcome"] = "rejected"
            return {
                "trace": trace,
                "pending_call": None,
                "loop_state": LoopState.AWAIT_DECISION,
                "messages": state["messages"] + [
                    call_message,
                    {
                        "role": "user",
                        "content": (
                            f"The query was rejected: {exc}. Only a single "
                            "read-only SELECT statement is allowed."
                        ),
                    },
                ],
            }
        except StoreError:
            logger.exception("Function %s failed", call.name)
            entry["outcome"] = "error"
            return {
                "trace": trace,
                "pending_call": None,
                "loop_state": LoopState.ERRORED,
                "response": STORE_ERROR_MESSAGE.format(name=call.name),
            }
        except ProviderError:
            logger.exception("Function %s failed", call.name)
            entry["outcome"] = "error"
            return {
                "trace": trace,
                "pending_call": None,
                "loop_state": LoopState.ERRORED,
                "response": PROVIDER_ERROR_MESSAGE.format(name=call.name),
            }
        except Exception as exc:
            logger.exception("Function %s failed unexpectedly", call.name)
            entry["outcome"] = "error"
            return {
                "trace": trace,
                "pending_call": None,
                "loop_state": LoopState.ERRORED,
                "response": UNEXPECTED_ERROR_MESSAGE.format(
                    name=call.name, error=exc,
                ),
            }

        rows = row_count(result)
        entry["rows"] = rows
        if rows == 0:
            entry["outcome"] = "empty"
            content = NO_RESULTS_MESSAGE.format(name=call.name)
            tools_enabled = False
        else:
            entry["outcome"] = "ok"
            content = (
                f"Result of {call.name}:\n\n{format_result(result)}\n\n"
                f"Use these results to answer: {state['reframed_query']}\n"
                "Show the listed fields for each item."
            )
            tools_enabled = state.get("tools_enabled", True)

        return {
            "trace": trace,
            "pending_call": None,
            "loop_state": LoopState.AWAIT_DECISION,
            "tools_enabled": tools_enabled,
            "messages": state["messages"] + [
                call_message, {"role": "user", "content": content},
            ],
        }

    async def _finalize_node(self, state: LoopGraphState) -> dict:
        session_id = state["session_id"]
        # The reframed text is stored so later follow-ups inherit its entities
        self._store.append_turn(session_id, "user", state["reframed_query"])
        self._store.append_turn(session_id, "assistant", state["response"])
        self._store.update_summary(
            session_id, state["reframed_query"], state["response"],
        )
        return {}


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


def _route_after_reframe(state: LoopGraphState) -> str:
    return "knowledge" if state["route"] == "knowledge" else "decide"


def _route_after_decide(state: LoopGraphState) -> str:
    return "invoke" if state["loop_state"] is LoopState.INVOKING else "finalize"


def _route_after_invoke(state: LoopGraphState) -> str:
    if state["loop_state"] in TERMINAL_STATES:
        return "finalize"
    return "decide"


# ---------------------------------------------------------------------------
# Prompt Building
# ---------------------------------------------------------------------------


def is_knowledge_query(text: str) -> bool:
    lowered = text.lower()
    return any(trigger in lowered for trigger in KNOWLEDGE_TRIGGERS)


def build_system_prompt(context_summary: str, today: date | None = None) -> str:
    """System prompt for the tool-use loop."""
    today = today or date.today()
    functions = "\n".join(
        f"- {spec.name}: {spec.description}" for spec in CATALOG.values()
    )
    context = context_summary or "No earlier context."
    return f"""You are a financial assistant that answers questions about bank transactions by calling functions.

Today is {today.isoformat()}.

Available functions:
{functions}

Parameter rules:
- Put company or customer names in customer_name, never in category_query.
- Only pass year when the user mentions one; otherwise leave dates empty.
- Convert quarters to date ranges: Q1 = January 1 to March 31, Q2 = April 1
  to June 30, Q3 = July 1 to September 30, Q4 = October 1 to December 31.
- Dates are YYYY-MM-DD.
- Call at most one function at a time. When a function returns data, answer
  from it and show the listed fields; do not invent transactions.

Conversation context: {context}"""


def build_history_messages(
    turns: list[Turn],
    limit: int | None = None,
    max_chars: int | None = None,
) -> list[dict[str, str]]:
    """The last `limit` turns as chat messages, each truncated."""
    limit = limit or settings.prompt_history_messages
    max_chars = max_chars or settings.prompt_message_max_chars
    recent = turns[-limit:] if limit > 0 else []
    messages = [
        {"role": turn.role, "content": _truncate(turn.content, max_chars)}
        for turn in recent
    ]
    # Conversations must open with a user message
    while messages and messages[0]["role"] != "user":
        messages.pop(0)
    # The current question follows as a user message
    while messages and messages[-1]["role"] == "user":
        messages.pop()
    return messages


def generate_session_id() -> str:
    """Session ids look like session_<epoch-ms>_<8 hex chars>."""
    return f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _timed_out(seconds: float, activity: str) -> dict:
    return {
        "loop_state": LoopState.TIMED_OUT,
        "response": TIMEOUT_MESSAGE.format(seconds=seconds, activity=activity),
    }


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."
