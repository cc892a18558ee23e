"""Shared agent plumbing: execution metadata, prompt templates, output parsing."""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from takeoff.modules.extraction.schema_compiler import AgentDefinition

AgentStatus = Literal["success", "failed", "timeout"]


class AgentExecutionMetadata(BaseModel):
    """One agent's outcome for one item, stored on the result."""

    model_config = ConfigDict(populate_by_name=True)

    agent_name: str = Field(alias="agentName")
    agent_order: int = Field(alias="agentOrder")
    agent_prompt: str = Field(alias="agentPrompt")
    executed_at: str = Field(alias="executedAt")
    duration_ms: int = Field(alias="durationMs")
    status: AgentStatus
    error: str | None = None

    @classmethod
    def for_agent(
        cls,
        agent: AgentDefinition,
        status: AgentStatus,
        duration_ms: int,
        error: str | None = None,
    ) -> AgentExecutionMetadata:
        return cls(
            agentName=agent.name,
            agentOrder=agent.order,
            agentPrompt=agent.prompt,
            executedAt=datetime.now(timezone.utc).isoformat(),
            durationMs=duration_ms,
            status=status,
            error=error,
        )

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class SchemaContext(BaseModel):
    """What an agent is told about the schema it post-processes."""

    name: str
    definition: dict[str, Any]


class AgentOutputError(ValueError):
    """Agent returned something other than the expected JSON shape."""


_FENCE_OPEN_RE = re.compile(r"^```(?:json|JSON)?\s*\n?")


def strip_markdown_code_blocks(text: str) -> str:
    """Strip a leading ```/```json fence and its closing fence, if present."""
    trimmed = text.strip()
    if not trimmed.startswith("```"):
        return trimmed
    match = _FENCE_OPEN_RE.match(trimmed)
    content = trimmed[match.end():] if match else trimmed
    closing = content.rfind("```")
    if closing != -1:
        content = content[:closing]
    return content.strip()


def parse_agent_array(output: Any) -> list[Any]:
    """Batch agents must return a JSON array."""
    parsed = output
    if isinstance(output, str):
        try:
            parsed = json.loads(strip_markdown_code_blocks(output))
        except json.JSONDecodeError as exc:
            raise AgentOutputError(f"Agent returned invalid JSON: {exc.msg}") from exc
    if not isinstance(parsed, list):
        raise AgentOutputError(
            f"Agent must return an array of results, got {type(parsed).__name__}"
        )
    return parsed


# ---------------------------------------------------------------------------
# Prompt templates
# ---------------------------------------------------------------------------

BATCH_PROMPT_TEMPLATE = """# Batch Post-Processing Task

You are processing {count} extraction results from the schema: {schema_name}

## Your Task
{task}

## Current Data (Array of {count} results)
{data}

## Schema Structure (for reference)
{definition}

## Critical Instructions - READ CAREFULLY
1. Process ALL {count} results according to your task
2. Return ONLY a valid JSON ARRAY - nothing else
3. DO NOT include markdown code blocks (```json, ```, etc.)
4. DO NOT include explanations, thoughts, or additional text
5. The output array length may differ from input (filtering/deduplicating is OK)
6. Maintain the schema structure for each result item
7. Each result MUST be a valid object matching the schema

## Output Rules
- First character must be: [
- Last character must be: ]
- NO text before the opening bracket [
- NO text after the closing bracket ]
- Each item in array must be valid JSON object

## Example Output Format
[
  {{"field1": "value1", "field2": "value2"}},
  {{"field1": "value3", "field2": "value4"}},
  {{"field1": "value5", "field2": "value6"}}
]

REMEMBER: Return ONLY the JSON array. Nothing else. No markdown. No explanation."""

SINGLE_PROMPT_TEMPLATE = """# Post-Processing Task

You are processing extraction results from the schema: {schema_name}

## Your Task
{task}

## Current Data
{data}

## Schema Structure (for reference)
{definition}

## Critical Instructions - READ CAREFULLY
1. Process the data according to your task
2. Return ONLY valid JSON - nothing else
3. DO NOT include markdown code blocks (```json, ```, etc.)
4. DO NOT include explanations, thoughts, or additional text
5. Maintain the schema structure
6. If filtering/transforming an array, return array; if single object, return object

## Output Rules
- Return ONLY JSON (object or array, depending on your task)
- NO text before or after the JSON
- NO markdown code blocks
- NO explanations

REMEMBER: Return ONLY the JSON. Nothing else."""


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


def build_batch_prompt(agent: AgentDefinition, items: list[Any], context: SchemaContext) -> str:
    return BATCH_PROMPT_TEMPLATE.format(
        count=len(items),
        schema_name=context.name,
        task=agent.prompt,
        data=_dump(items),
        definition=_dump(context.definition),
    )


def build_single_prompt(agent: AgentDefinition, data: Any, context: SchemaContext) -> str:
    return SINGLE_PROMPT_TEMPLATE.format(
        schema_name=context.name,
        task=agent.prompt,
        data=_dump(data),
        definition=_dump(context.definition),
    )
