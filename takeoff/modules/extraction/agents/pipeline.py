"""Agent pipeline — ordered post-processing over a layer's parsed items.

Each enabled agent (ascending ``order``) gets ONE LLM call over the whole
item list and must return a JSON array, which becomes the next agent's
input. A failed or timed-out agent degrades instead of aborting: its
input passes through unchanged and every affected item records the
failure in its execution metadata. Agents are never retried.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any

import structlog

from takeoff.core.config import clamp_timeout, settings
from takeoff.core.exceptions import ExternalTimeoutError, PartialFailure
from takeoff.modules.extraction.agents.base import (
    AgentExecutionMetadata,
    AgentOutputError,
    SchemaContext,
    build_batch_prompt,
    build_single_prompt,
    parse_agent_array,
    strip_markdown_code_blocks,
)
from takeoff.modules.extraction.agents.diagnostics import (
    PipelineDiagnostics,
    analyze,
    format_for_logging,
)
from takeoff.modules.extraction.agents.input_validator import format_report, validate_items
from takeoff.modules.extraction.llm import LLMClient, call_with_timeout
from takeoff.modules.extraction.schema_compiler import (
    AgentDefinition,
    sort_agents_by_order,
    validate_agents,
)

logger = structlog.get_logger()


@dataclass
class PipelineOutcome:
    """Items after all agents, with per-item metadata aligned by position."""

    items: list[dict[str, Any]]
    metadata: list[list[dict[str, Any]]]
    diagnostics: PipelineDiagnostics | None = None
    failures: list[PartialFailure] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.failures)


def agent_timeout(agent: AgentDefinition) -> float:
    return clamp_timeout(agent.timeout_seconds or settings.agent_timeout_seconds)


# Fields the parser sets that agents are not asked to maintain.
BOOKKEEPING_FIELDS = (
    "pageNumber",
    "sourceText",
    "location",
    "confidenceScore",
    "extractionMethod",
    "sourceTextIncomplete",
    "missingFieldsInSourceText",
)


def restore_bookkeeping(inputs: list[dict[str, Any]], outputs: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Copy fields an agent dropped back from its input items.

    Outputs aligned one-to-one with the inputs get every missing bookkeeping
    field back from the same position. Otherwise only ``pageNumber`` is
    restored, from the input at the same position (or the last input).
    """
    if not inputs:
        return outputs
    aligned = len(inputs) == len(outputs)
    keys = BOOKKEEPING_FIELDS if aligned else ("pageNumber",)
    restored: list[dict[str, Any]] = []
    for index, output in enumerate(outputs):
        source = inputs[min(index, len(inputs) - 1)]
        missing = {key: source[key] for key in keys if key not in output and key in source}
        restored.append({**output, **missing} if missing else output)
    return restored


class AgentPipeline:
    """Runs a schema's agents against parsed items."""

    def __init__(self, llm: LLMClient) -> None:
        self.llm = llm

    async def run(
        self,
        agents: list[AgentDefinition],
        items: list[dict[str, Any]],
        context: SchemaContext,
    ) -> PipelineOutcome:
        ordered = sort_agents_by_order(agents)
        if not ordered or not items:
            return PipelineOutcome(items=list(items), metadata=[[] for _ in items])

        validation = validate_items(items, context.definition)
        if validation.invalid_count:
            logger.warning("Items bypass agents", report=format_report(validation))
        current: list[Any] = list(validation.valid)
        history: list[list[dict[str, Any]]] = [[] for _ in current]
        failures: list[PartialFailure] = []

        logger.info(
            "Agent pipeline started",
            schema=context.name,
            items=len(current),
            skipped=validation.invalid_count,
            agents=[(a.order, a.name) for a in ordered],
        )

        for agent in ordered:
            if not current:
                break
            outputs, meta, failure = await self._run_agent(agent, current, context)
            if failure is None:
                history = [
                    (history[i] if i < len(history) else []) + [meta.to_json()]
                    for i in range(len(outputs))
                ]
                current = restore_bookkeeping(current, outputs)
            else:
                history = [h + [meta.to_json()] for h in history]
                failures.append(failure)

        diagnostics = analyze(history, len(ordered))
        logger.info("Agent pipeline diagnostics", summary=format_for_logging(diagnostics))

        return PipelineOutcome(
            items=current + validation.invalid,
            metadata=history + [[] for _ in validation.invalid],
            diagnostics=diagnostics,
            failures=failures,
        )

    async def _run_agent(
        self,
        agent: AgentDefinition,
        items: list[Any],
        context: SchemaContext,
    ) -> tuple[list[Any], AgentExecutionMetadata, PartialFailure | None]:
        start = time.monotonic()
        timeout = agent_timeout(agent)
        try:
            raw = await call_with_timeout(
                self.llm.ask("", build_batch_prompt(agent, items, context)),
                timeout,
                what=f"agent {agent.name}",
            )
            outputs = parse_agent_array(raw)
            if not all(isinstance(o, dict) for o in outputs):
                raise AgentOutputError("Agent must return an array of JSON objects")
        except Exception as exc:
            duration_ms = int((time.monotonic() - start) * 1000)
            timed_out = isinstance(exc, ExternalTimeoutError)
            message = str(exc) or type(exc).__name__
            logger.error(
                "Agent failed, passing input through",
                agent=agent.name,
                order=agent.order,
                status="timeout" if timed_out else "failed",
                error=message,
                exc_info=not isinstance(exc, (AgentOutputError, ExternalTimeoutError)),
            )
            meta = AgentExecutionMetadata.for_agent(
                agent, "timeout" if timed_out else "failed", duration_ms, error=message
            )
            failure = PartialFailure(scope="agent", target=agent.name, message=message)
            return items, meta, failure

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Agent completed",
            agent=agent.name,
            order=agent.order,
            inputs=len(items),
            outputs=len(outputs),
            duration_ms=duration_ms,
        )
        return outputs, AgentExecutionMetadata.for_agent(agent, "success", duration_ms), None

    async def test_agent(
        self,
        agent: AgentDefinition | dict[str, Any],
        sample_data: Any,
        context: SchemaContext,
    ) -> dict[str, Any]:
        """Run one agent against caller-supplied data; persists nothing.

        Returns ``{"output": ..., "metadata": {...}}``. On failure the
        output is the unchanged input.
        """
        if not isinstance(agent, AgentDefinition):
            agent = validate_agents([agent])[0]

        start = time.monotonic()
        try:
            raw = await call_with_timeout(
                self.llm.ask("", build_single_prompt(agent, sample_data, context)),
                agent_timeout(agent),
                what=f"agent {agent.name}",
            )
        except Exception as exc:
            status = "timeout" if isinstance(exc, ExternalTimeoutError) else "failed"
            logger.warning("Agent test failed", agent=agent.name, status=status, error=str(exc))
            meta = AgentExecutionMetadata.for_agent(
                agent, status, int((time.monotonic() - start) * 1000), error=str(exc) or type(exc).__name__
            )
            return {"output": sample_data, "metadata": meta.to_json()}

        output: Any = raw
        if isinstance(raw, str):
            try:
                output = json.loads(strip_markdown_code_blocks(raw))
            except json.JSONDecodeError:
                logger.warning("Agent returned non-JSON output, using as-is", agent=agent.name)
        elif hasattr(raw, "model_dump"):
            output = raw.model_dump()

        meta = AgentExecutionMetadata.for_agent(agent, "success", int((time.monotonic() - start) * 1000))
        return {"output": output, "metadata": meta.to_json()}
