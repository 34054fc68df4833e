"""
AI Classifier - Task detection.

Turns discussion text into detected task candidates and a routing domain
with a single completion call. The call is bounded by a timeout; any failure
surfaces as TransientError and retrying is left to the Job orchestrator.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from ..common.errors import FatalError, TransientError
from ..common.llm_utils import coerce_str, coerce_str_list, parse_llm_json
from ..common.schemas import DetectedTask

logger = logging.getLogger("triage.pipeline.classifier")

MAX_TASKS = 5
MAX_INPUT_CHARS = 12000

TASK_POLICY = """You find actionable work items in workplace discussions and describe them for an issue tracker.

Rules:
- Only extract tasks that are specific and actionable. If there are none, return an empty list.
- Extract at most {max_tasks} tasks. Set isMultiTask=true when 2 or more distinct tasks exist.
- actionItems: only steps EXPLICITLY stated in the discussion, otherwise null. Never invent steps.
- Only fill a field when you are confident; otherwise use null.

Field values:
- priority: "low" | "medium" | "high" | "urgent" | null
- type: "bug" | "feature" | "question" | "improvement" | null
- assignee: the user id of the person asked to do the work, taken from a mention, else null
- dueDate: "YYYY-MM-DD" only when a date is explicitly mentioned, else null
- tags: short lowercase topic tags, else null
- domain: {domain_rule}

Respond with JSON only:
{{"isMultiTask": true|false, "domain": "<discussion-level domain or null>", "summary": "one sentence",
  "tasks": [{{"title": "5-10 words", "description": "1-2 sentences", "actionItems": ["..."]|null,
  "priority": ..., "type": ..., "assignee": ..., "dueDate": ..., "tags": [...]|null, "domain": ...}}]}}"""


@dataclass
class PromptOverrides:
    """Per-flow prompt customization"""
    task_prompt: Optional[str] = None
    summary_prompt: Optional[str] = None


@dataclass
class ClassificationResult:
    """Classifier output for one discussion"""
    detected_tasks: List[DetectedTask] = field(default_factory=list)
    domain: Optional[str] = None
    is_multi_task: bool = False
    summary: Optional[str] = None
    raw_response: Optional[str] = None


class TaskClassifier:
    """
    Completion-backed task detector.

    Args:
        llm: Object with ``is_available`` and ``async agenerate(prompt, system=, max_tokens=, timeout=)``
        timeout: Seconds allowed for one classification
        max_tasks: Upper bound on returned tasks
    """

    def __init__(self, llm, timeout: float = 60.0, max_tasks: int = MAX_TASKS):
        self._llm = llm
        self._timeout = timeout
        self._max_tasks = max_tasks

    @property
    def is_available(self) -> bool:
        return self._llm is not None and self._llm.is_available

    def build_system_prompt(self, available_domains: Optional[Sequence[str]] = None) -> str:
        if available_domains:
            domain_rule = (
                "one of " + ", ".join(f'"{d}"' for d in available_domains)
                + ", or null if none fits"
            )
        else:
            domain_rule = "null"
        return TASK_POLICY.format(max_tasks=self._max_tasks, domain_rule=domain_rule)

    def build_prompt(self, text: str, overrides: Optional[PromptOverrides] = None) -> str:
        parts = [f"<discussion>\n{text[:MAX_INPUT_CHARS]}\n</discussion>"]
        if overrides and overrides.summary_prompt:
            parts.append(f"<summary_instructions>\n{overrides.summary_prompt}\n</summary_instructions>")
        if overrides and overrides.task_prompt:
            parts.append(f"<custom_instructions>\n{overrides.task_prompt}\n</custom_instructions>")
        return "\n\n".join(parts)

    async def classify(
        self,
        text: str,
        overrides: Optional[PromptOverrides] = None,
        available_domains: Optional[Sequence[str]] = None,
    ) -> ClassificationResult:
        """
        Detect tasks in discussion text.

        Raises:
            FatalError: no completion provider is configured
            TransientError: timeout, provider error, or unusable output
        """
        if not self.is_available:
            raise FatalError("classifier has no available completion provider")

        try:
            raw = await asyncio.wait_for(
                self._llm.agenerate(
                    self.build_prompt(text, overrides),
                    system=self.build_system_prompt(available_domains),
                    max_tokens=2048,
                    timeout=self._timeout,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            raise TransientError(f"classifier timed out after {self._timeout}s")
        except Exception as e:
            raise TransientError(f"classifier call failed: {e}")

        data = parse_llm_json(raw)
        if not isinstance(data.get("tasks"), list):
            logger.warning("Classifier returned no task list: %.200s", raw)
            raise TransientError("classifier response had no task list")

        return self._parse_result(data, raw, available_domains)

    def _parse_result(
        self,
        data: dict,
        raw: str,
        available_domains: Optional[Sequence[str]],
    ) -> ClassificationResult:
        allowed = {d.lower(): d for d in available_domains or []}

        def _domain(value) -> Optional[str]:
            value = coerce_str(value)
            if value is None or not allowed:
                return None
            return allowed.get(value.lower())

        def _lower(value) -> Optional[str]:
            # values outside the vocabulary are kept; the value mapper passes them through
            value = coerce_str(value)
            return value.lower() if value else None

        tasks = []
        for item in data["tasks"][: self._max_tasks]:
            if not isinstance(item, dict):
                continue
            title = coerce_str(item.get("title"))
            if not title:
                continue
            tasks.append(DetectedTask(
                title=title[:200],
                description=coerce_str(item.get("description")),
                action_items=coerce_str_list(item.get("actionItems")),
                priority=_lower(item.get("priority")),
                type=_lower(item.get("type")),
                assignee=coerce_str(item.get("assignee")),
                due_date=coerce_str(item.get("dueDate")),
                tags=coerce_str_list(item.get("tags")),
                domain=_domain(item.get("domain")),
            ))

        domain = _domain(data.get("domain"))
        if domain is None:
            domain = next((t.domain for t in tasks if t.domain), None)

        logger.info("Classifier detected %d task(s), domain=%s", len(tasks), domain)
        return ClassificationResult(
            detected_tasks=tasks,
            domain=domain,
            is_multi_task=bool(data.get("isMultiTask")) or len(tasks) > 1,
            summary=coerce_str(data.get("summary")),
            raw_response=raw,
        )
