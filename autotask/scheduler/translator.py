"""Plan translator.

Turns a natural-language request into a validated, not yet persisted,
Task. The language model proposes a structured plan; everything after that
is deterministic validation against the cron rules and the operation
registry.
"""
from __future__ import annotations

from typing import Any

from loguru import logger
from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from ..services.llm import LLMProvider
from .errors import PlanValidationError, TranslationError
from .models import Personalization, Step, Task
from .registry import operations_catalog, validate_step
from .schedule import compute_next_run_at_ms, cron_to_human, is_valid_timezone, validate_cron_expression
from .types import StepKind, TaskStatus, Tone

logger = logger.bind(module="scheduler.translator")

_TONE_ALIASES = {"friendly": Tone.CASUAL, "formal": Tone.PROFESSIONAL, "inspiring": Tone.MOTIVATIONAL}


# ============== Plan Schema ==============

class PlanSchedule(BaseModel):
    cron: str
    timezone: str | None = None
    natural_language: str = Field(
        default="",
        validation_alias=AliasChoices("natural_language", "naturalLanguage"),
    )


class PlanStep(BaseModel):
    type: StepKind
    service: str
    operation: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    output_binding: str | None = Field(
        default=None,
        validation_alias=AliasChoices("output_binding", "outputBinding"),
    )


class PlanPersonalization(BaseModel):
    tone: Tone | None = None
    keywords: list[str] = Field(default_factory=list)
    filters: dict[str, Any] = Field(default_factory=dict)

    @field_validator("tone", mode="before")
    @classmethod
    def _normalize_tone(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        value = value.strip().lower()
        if value in _TONE_ALIASES:
            return _TONE_ALIASES[value]
        return value if value in {t.value for t in Tone} else None


class TaskPlan(BaseModel):
    """Structured plan returned by the language model."""
    name: str
    description: str = ""
    schedule: PlanSchedule
    steps: list[PlanStep] = Field(validation_alias=AliasChoices("steps", "actions"))
    personalization: PlanPersonalization = Field(default_factory=PlanPersonalization)


# ============== Prompt ==============

SYSTEM_PROMPT = (
    "You turn requests for recurring personal briefings into structured task plans. "
    "You only use the operations you are given and you always answer with a single JSON object."
)

PLAN_INSTRUCTIONS = """Convert the user's request into a scheduled task plan.

Only use these operations. Never invent new ones.
{catalog}

Rules:
- schedule.cron is a 5-field cron expression (minute hour day month weekday) using only digits, *, -, / and ,
  * "every morning at 7am" -> "0 7 * * *"
  * "every Monday at 9am" -> "0 9 * * 1"
  * "daily at 6pm" -> "0 18 * * *"
  * "every weekday at 8am" -> "0 8 * * 1-5"
- schedule.timezone is an IANA name (e.g. America/Los_Angeles for "Pacific", America/New_York for "Eastern"). Use {default_timezone} when none is mentioned.
- steps run in order. Each has type (data_collection | processing | delivery), service, operation, parameters and an optional output_binding.
- Name each step's result with output_binding (e.g. "calendar_events", "trending_items") and reference it later as "{{{{name}}}}" in strings or by bare name inside an "inputs" list.
- Never use these reserved names as output_binding: date, today_long, today_short, today, time, weekday, month, year, yesterday_date, yesterday_short, yesterday. They are available to every step as "{{{{date}}}}" etc.
- At least one step must be a delivery step. Email delivery uses gmail.send with a subject.
- personalization.tone is one of motivational, professional, casual; personalization.keywords lists the topics the user cares about.

Example:
{{
  "name": "Morning briefing",
  "description": "Today's meetings and AI news every morning",
  "schedule": {{"cron": "0 7 * * *", "timezone": "America/Los_Angeles", "natural_language": "Every day at 7am Pacific"}},
  "steps": [
    {{"type": "data_collection", "service": "calendar", "operation": "list_events", "parameters": {{"timeMin": "today", "timeMax": "end_of_day"}}, "output_binding": "calendar_events"}},
    {{"type": "data_collection", "service": "search", "operation": "trending", "parameters": {{"keywords": ["AI"], "limit": 10}}, "output_binding": "trending_items"}},
    {{"type": "processing", "service": "llm", "operation": "compose_email", "parameters": {{"inputs": ["calendar_events", "trending_items"], "tone": "motivational"}}, "output_binding": "email_content"}},
    {{"type": "delivery", "service": "gmail", "operation": "send", "parameters": {{"to": "{owner}", "subject": "Your briefing for {{{{today_short}}}}", "body": "{{{{email_content}}}}"}}}}
  ],
  "personalization": {{"tone": "motivational", "keywords": ["AI"], "filters": {{}}}}
}}

User: {owner}
Request: "{request}"

Respond with the JSON object only."""


class PlanTranslator:
    """Translates natural-language requests into validated tasks."""

    def __init__(
        self,
        llm: LLMProvider,
        default_timezone: str = "UTC",
        temperature: float = 0.1,
    ):
        self.llm = llm
        self.default_timezone = default_timezone
        self.temperature = temperature

    def build_prompt(self, request: str, owner: str) -> str:
        return PLAN_INSTRUCTIONS.format(
            catalog=operations_catalog(),
            default_timezone=self.default_timezone,
            owner=owner,
            request=request.replace('"', "'"),
        )

    async def translate(
        self,
        request: str,
        owner: str,
        recipients: list[str] | None = None,
        sender: str | None = None,
    ) -> Task:
        """Translate a request into a task awaiting approval.

        Args:
            request: The user's natural-language description
            owner: Identity of the task owner
            recipients: When given, overrides the ``to`` of every gmail.send step
            sender: Optional ``from`` for overridden gmail.send steps

        Returns:
            A task in ``pending_approval`` status, disabled, not persisted

        Raises:
            PlanValidationError: The plan broke a cron, timezone or registry rule
            TranslationError: The model failed or returned an unusable answer
        """
        if not request or not request.strip():
            raise TranslationError("Task translation failed: the request is empty")

        try:
            raw = await self.llm.generate_json(
                self.build_prompt(request, owner),
                system=SYSTEM_PROMPT,
                temperature=self.temperature,
            )
        except Exception as e:
            logger.error(f"Language model call failed: {e}")
            raise TranslationError(f"Task translation failed: {e}") from e

        try:
            plan = TaskPlan.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Model output did not match the plan schema: {e}")
            raise TranslationError(
                f"Task translation failed: the plan did not match the expected schema "
                f"({e.error_count()} errors)"
            ) from e

        if recipients:
            apply_recipients(plan, recipients, sender)

        self.validate(plan)

        task = self.to_task(plan, owner)
        logger.info(f"Translated request into task '{task.name}' ({task.cron} {task.timezone})")
        return task

    def validate(self, plan: TaskPlan) -> None:
        """Run the deterministic plan checks.

        Raises:
            PlanValidationError: With every error found, the first one leading
        """
        errors: list[str] = []
        valid_operations: list[str] = []
        timezone = plan.schedule.timezone or self.default_timezone

        if not validate_cron_expression(plan.schedule.cron):
            errors.append(
                f"Invalid cron expression: '{plan.schedule.cron}'. It must have exactly 5 fields "
                "(minute hour day month weekday) using only digits, *, -, / and ,"
            )
        if not is_valid_timezone(timezone):
            errors.append(f"Unknown timezone: '{timezone}'")

        if not plan.steps:
            errors.append("The task has no steps")
        elif not any(s.type == StepKind.DELIVERY for s in plan.steps):
            errors.append("The task must have at least one delivery step")

        for step in plan.steps:
            result = validate_step(_to_step(step))
            errors.extend(result.errors)
            if result.suggestions and not valid_operations:
                valid_operations = result.suggestions

        if errors:
            raise PlanValidationError(errors, valid_operations, plan.model_dump())

    def to_task(self, plan: TaskPlan, owner: str) -> Task:
        timezone = plan.schedule.timezone or self.default_timezone
        task = Task(
            owner=owner,
            name=plan.name.strip() or "Untitled task",
            description=plan.description,
            cron=plan.schedule.cron.strip(),
            timezone=timezone,
            steps=[_to_step(s) for s in plan.steps],
            personalization=Personalization(
                tone=plan.personalization.tone,
                keywords=plan.personalization.keywords,
                filters=plan.personalization.filters,
            ),
            enabled=False,
            status=TaskStatus.PENDING_APPROVAL,
        )
        task.next_run_at_ms = compute_next_run_at_ms(task.cron, task.timezone)
        return task


def _to_step(step: PlanStep) -> Step:
    return Step(
        kind=step.type,
        service=step.service.strip(),
        operation=step.operation.strip(),
        parameters=dict(step.parameters),
        output_binding=step.output_binding or None,
    )


def apply_recipients(plan: TaskPlan, recipients: list[str], sender: str | None = None) -> None:
    """Point every gmail.send step at the given recipients."""
    for step in plan.steps:
        if step.service == "gmail" and step.operation == "send":
            step.parameters["to"] = list(recipients)
            if sender:
                step.parameters["from"] = sender


def preview(task: Task) -> str:
    """Human-readable summary of a task for approval."""
    lines = [
        f"Task: {task.name}",
        f"Description: {task.description}",
        "",
        f"Schedule: {cron_to_human(task.cron, task.timezone)}",
        f"  ({task.cron} in {task.timezone})",
        "",
        "Steps:",
    ]
    for index, step in enumerate(task.steps, 1):
        lines.append(f"  {index}. {step.kind.value}: {step.action}")
        if step.output_binding:
            lines.append(f"     -> saves result as: {step.output_binding}")

    personal = task.personalization
    if personal.tone or personal.keywords:
        lines.extend(["", "Personalization:"])
        if personal.tone:
            lines.append(f"  Tone: {personal.tone.value}")
        if personal.keywords:
            lines.append(f"  Keywords: {', '.join(personal.keywords)}")

    return "\n".join(lines)
