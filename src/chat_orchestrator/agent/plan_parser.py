"""Turn raw LLM output into a validated Plan.

Parsing never raises. Callers get a ``ParseResult`` holding either the plan
or a human-readable error, so the engine decides how to fail the task.

Stages, in order:
1) ``json.loads`` on the whole content.
2) The first ``{...}`` block found in the content (models like to wrap JSON
   in prose or code fences).
3) One repair round trip through the caller-provided callable, then stages
   1 and 2 again on the repaired content.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

from pydantic import ValidationError

from chat_orchestrator.models import Plan

logger = logging.getLogger(__name__)

INVALID_JSON_ERROR = "LLM response is not valid JSON"

_OBJECT_PATTERN = re.compile(r"\{.*\}", re.DOTALL)

RepairCallable = Callable[[str], str]


@dataclass(frozen=True)
class ParseResult:
    plan: Plan | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.plan is not None


class PlanParser:
    def parse(self, content: str) -> ParseResult:
        data = self._load_json(content)
        if data is None:
            return ParseResult(error=INVALID_JSON_ERROR)
        return self._validate(data)

    def parse_with_repair(self, content: str, repair: RepairCallable) -> ParseResult:
        data = self._load_json(content)
        if data is None:
            logger.warning("plan_parser event=repair_requested content_chars=%d", len(content))
            try:
                repaired = repair(content)
            except Exception as exc:  # noqa: BLE001
                logger.warning("plan_parser event=repair_failed error=%s", exc)
                return ParseResult(error=INVALID_JSON_ERROR)
            data = self._load_json(repaired)
            if data is None:
                return ParseResult(error=INVALID_JSON_ERROR)
        return self._validate(data)

    @staticmethod
    def _load_json(content: str) -> Any | None:
        try:
            return json.loads(content)
        except (TypeError, ValueError):
            pass

        match = _OBJECT_PATTERN.search(content or "")
        if match is None:
            return None
        try:
            return json.loads(match.group(0))
        except ValueError:
            return None

    @staticmethod
    def _validate(data: Any) -> ParseResult:
        try:
            plan = Plan.model_validate(data)
        except ValidationError as exc:
            details = "; ".join(
                f"{'.'.join(str(part) for part in item['loc']) or 'plan'}: {item['msg']}"
                for item in exc.errors()
            )
            return ParseResult(error=f"Plan schema validation failed: {details}")
        if not plan.estimated_tools:
            plan = plan.model_copy(update={"estimated_tools": plan.derived_tools()})
        return ParseResult(plan=plan)
