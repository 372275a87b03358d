"""
Formula service: tool-constrained generation wrapped in deterministic guardrails.

Builds the prompt from the user's health profile and the catalog, asks the
configured provider for a create_formula tool call, validates the result,
merges in interaction warnings for the user's medications, and persists
accepted formulas as the user's next version. A rejected
candidate gets exactly one repair round with the violation list fed back
to the model before the request gives up.
"""

import asyncio
import logging
from typing import AsyncIterator, List, Optional, Tuple

from formula_engine.config import settings
from formula_engine.models.formula import Formula, FormulaDraft, FormulaLine, UserCustomizations
from formula_engine.models.generation import (
    GenerateFormulaRequest,
    GenerationEvent,
    GenerationOutcome,
    HealthProfile,
)
from formula_engine.models.provider import ChatMessage, CompletionOptions, CompletionResult, ToolCall
from formula_engine.models.validation import AcceptedFormula, ValidationFailure, ValidationResult
from formula_engine.services.formula_interactions import apply_interaction_warnings
from formula_engine.services.formula_store import FormulaNotFoundError, FormulaStore
from formula_engine.services.formula_validator import FormulaValidator, capacity_bounds
from formula_engine.services.ingredient_catalog import IngredientCatalog, get_catalog
from formula_engine.services.provider_gateway import ProviderGateway
from formula_engine.services.tool_definitions import CREATE_FORMULA_TOOL
from formula_engine.utils.constants import FORMULA_LIMITS
from formula_engine.utils.validators import (
    sanitize_input,
    validate_capsule_count,
    validate_formula_name,
    validate_user_id,
)

logger = logging.getLogger(__name__)

GENERATION_FAILED_MESSAGE = (
    "We couldn't generate a formula that meets our safety rules. Please try again."
)

DEFAULT_USER_TURN = "Please create my personalized supplement formula now."

# ─── System Prompt ─────────────────────────────────────────────────────────────

FORMULA_SYSTEM_PROMPT = """You are a supplement formulation assistant. You design a personalized daily capsule formula for the user from a fixed catalog of approved ingredients.

## Approved Catalog
Use ONLY these ingredients, spelled exactly as written. Do not add potency, extract ratios, percentages or source descriptors to the names.

{catalog}

## Formula Rules
- Daily serving: {capsule_count} capsules of {capsule_capacity}mg each, so the formula must total no more than {target_mg}mg (hard limit {max_mg}mg).
- Include between {min_count} and {max_count} ingredients in total.
- Every amount is in "mg" and at least {min_dose}mg.
- System Supports go in "bases" at exactly their listed dose.
- Individual Ingredients go in "additions" at their listed dose, or within their listed range.
- Respect allergies, medications and conditions; explain relevant cautions in "warnings".

## User Health Profile
{profile}

## Output
When you are ready, call the create_formula tool exactly once. Keep any text reply brief; the formula itself must only be given through the tool.
"""


class FormulaService:
    """Generates, validates, persists and customizes user formulas."""

    def __init__(
        self,
        gateway: ProviderGateway,
        store: FormulaStore,
        validator: Optional[FormulaValidator] = None,
        catalog: Optional[IngredientCatalog] = None,
        repair_enabled: bool = settings.ENABLE_REPAIR_RETRY,
        default_capsule_count: int = settings.DEFAULT_CAPSULE_COUNT,
    ):
        self.gateway = gateway
        self.store = store
        self._catalog = catalog
        self.validator = validator or FormulaValidator(
            catalog=catalog,
            capsule_capacity_mg=settings.CAPSULE_CAPACITY_MG,
            default_capsule_count=default_capsule_count,
        )
        self.repair_enabled = repair_enabled
        self.default_capsule_count = default_capsule_count

    @property
    def catalog(self) -> IngredientCatalog:
        return self._catalog or get_catalog()

    @property
    def max_rounds(self) -> int:
        return 2 if self.repair_enabled else 1

    # ─── Public entry points ───────────────────────────────────────────────────

    async def generate(self, request: GenerateFormulaRequest) -> GenerationOutcome:
        """
        Generate, validate and persist a formula with a buffered completion.

        Returns:
            GenerationOutcome: accepted with the stored formula, or rejected
            with the last ValidationFailure

        Raises:
            ValueError: If the request is invalid
            ProviderTransientError: If the provider stayed unavailable through retries
            ProviderFatalError: If the provider rejected the request
            PersistenceError: If the accepted formula could not be stored
        """
        capsule_count, system_prompt, history, options = self._prepare(request)
        logger.info(f"Generating formula for user {request.user_id} ({capsule_count} capsules)")

        validation: Optional[ValidationResult] = None
        for round_number in range(1, self.max_rounds + 1):
            result = await self.gateway.complete(system_prompt, history, options)
            tool_call = result.formula_payload()
            validation = self.validator.validate_tool_call(tool_call, capsule_count)

            if isinstance(validation, AcceptedFormula):
                formula = await self._persist(request, validation.draft)
                return self._accepted(formula, validation.draft, round_number, result)

            if round_number < self.max_rounds:
                logger.warning(
                    f"Formula for user {request.user_id} rejected "
                    f"({len(validation.violations)} violations), requesting repair"
                )
                history = history + self._repair_turns(result.text, tool_call, validation)

        logger.warning(f"Formula generation for user {request.user_id} failed validation")
        return self._rejected(validation, self.max_rounds)

    async def stream_generate(self, request: GenerateFormulaRequest) -> AsyncIterator[GenerationEvent]:
        """
        Generate a formula while streaming the model's text.

        Yields text events as they arrive, then one terminal "formula" or
        "rejected" event. Validation and persistence only run after the
        stream has finished, so abandoning this generator mid-stream closes
        the provider connection and stores nothing.
        """
        capsule_count, system_prompt, history, options = self._prepare(request)
        logger.info(f"Streaming formula generation for user {request.user_id} ({capsule_count} capsules)")

        text_parts: List[str] = []
        tool_call: Optional[ToolCall] = None

        stream = self.gateway.stream(system_prompt, history, options)
        try:
            async for chunk in stream:
                if chunk.type == "text":
                    text_parts.append(chunk.text)
                    yield GenerationEvent(type="text", text=chunk.text)
                elif chunk.tool_call is not None and chunk.tool_call.name == CREATE_FORMULA_TOOL:
                    tool_call = chunk.tool_call
        finally:
            await stream.aclose()

        validation = self.validator.validate_tool_call(tool_call, capsule_count)
        rounds = 1
        result: Optional[CompletionResult] = None

        if isinstance(validation, ValidationFailure) and self.repair_enabled:
            logger.warning(f"Streamed formula for user {request.user_id} rejected, requesting repair")
            yield GenerationEvent(type="status", text="Refining formula to meet dosage rules")
            history = history + self._repair_turns("".join(text_parts), tool_call, validation)
            result = await self.gateway.complete(system_prompt, history, options)
            validation = self.validator.validate_tool_call(result.formula_payload(), capsule_count)
            rounds = 2

        if isinstance(validation, AcceptedFormula):
            formula = await self._persist(request, validation.draft)
            yield GenerationEvent(type="formula", outcome=self._accepted(formula, validation.draft, rounds, result))
        else:
            yield GenerationEvent(type="rejected", outcome=self._rejected(validation, rounds))

    async def customize(
        self,
        formula_id: str,
        added_bases: List[FormulaLine],
        added_individuals: List[FormulaLine],
    ) -> GenerationOutcome:
        """
        Add user-chosen ingredients to a formula as a new version.

        The combined formula goes through the same validator as generated
        ones. On success the new version supersedes the user's current
        formula and carries the accumulated customizations.

        Raises:
            ValueError: If nothing is being added
            FormulaNotFoundError: If the formula does not exist
            PersistenceError: If the new version could not be stored
        """
        if not added_bases and not added_individuals:
            raise ValueError("Customization must add at least one ingredient")

        formula = await asyncio.to_thread(self.store.get, formula_id)
        if formula is None:
            raise FormulaNotFoundError(f"Formula '{formula_id}' not found")

        previous = formula.user_customizations or UserCustomizations()
        customizations = UserCustomizations(
            added_bases=previous.added_bases + list(added_bases),
            added_individuals=previous.added_individuals + list(added_individuals),
        )

        validation = self.validator.validate_lines(
            formula.bases + list(added_bases),
            formula.additions + list(added_individuals),
            capsule_count=formula.capsule_count,
            rationale=formula.rationale,
            warnings=formula.warnings,
            disclaimers=formula.disclaimers,
        )
        if isinstance(validation, ValidationFailure):
            logger.warning(f"Customization of formula {formula_id} rejected")
            return GenerationOutcome(
                status="rejected",
                failure=validation,
                message="These ingredients can't be added to your formula.",
            )

        added_names = ", ".join(line.ingredient for line in list(added_bases) + list(added_individuals))
        draft = apply_interaction_warnings(validation.draft)
        new_formula = await asyncio.to_thread(
            self.store.create,
            formula.user_id,
            draft,
            name=formula.name,
            user_customizations=customizations,
            supersede=True,
            change_description=f"Customized from v{formula.version}: added {added_names}",
        )
        logger.info(f"Formula {formula_id} customized into v{new_formula.version}")
        return GenerationOutcome(
            status="accepted",
            formula=new_formula,
            adjustments=validation.draft.adjustments,
        )

    async def archive(self, formula_id: str) -> Formula:
        return await asyncio.to_thread(self.store.archive, formula_id)

    async def restore(self, formula_id: str) -> Formula:
        """Make an archived formula current again, archiving the present one first."""
        formula = await asyncio.to_thread(self.store.get, formula_id)
        if formula is None:
            raise FormulaNotFoundError(f"Formula '{formula_id}' not found")

        current = await asyncio.to_thread(self.store.get_current, formula.user_id)
        if current is not None and current.id != formula_id:
            await asyncio.to_thread(self.store.archive, current.id)
        return await asyncio.to_thread(self.store.restore, formula_id)

    async def rename(self, formula_id: str, name: str) -> Formula:
        validate_formula_name(name)
        return await asyncio.to_thread(self.store.rename, formula_id, name.strip())

    # ─── Prompt construction ───────────────────────────────────────────────────

    def build_system_prompt(self, profile: HealthProfile, capsule_count: int) -> str:
        target, tolerance = capacity_bounds(capsule_count, self.validator.capsule_capacity_mg)
        return FORMULA_SYSTEM_PROMPT.format(
            catalog=self.catalog.describe_for_prompt(),
            capsule_count=capsule_count,
            capsule_capacity=self.validator.capsule_capacity_mg,
            target_mg=target,
            max_mg=int(target + tolerance),
            min_count=FORMULA_LIMITS["min_ingredient_count"],
            max_count=FORMULA_LIMITS["max_ingredient_count"],
            min_dose=FORMULA_LIMITS["min_ingredient_dose_mg"],
            profile=self._describe_profile(profile),
        )

    @staticmethod
    def _describe_profile(profile: HealthProfile) -> str:
        def listing(values: List[str]) -> str:
            cleaned = [sanitize_input(v) for v in values if v and v.strip()]
            return ", ".join(cleaned) if cleaned else "none reported"

        lines = [
            f"- Age: {profile.age if profile.age is not None else 'not provided'}",
            f"- Sex: {sanitize_input(profile.sex) if profile.sex else 'not provided'}",
            f"- Conditions: {listing(profile.conditions)}",
            f"- Medications: {listing(profile.medications)}",
            f"- Allergies: {listing(profile.allergies)}",
            f"- Goals: {listing(profile.goals)}",
        ]
        if profile.lab_notes:
            lines.append(f"- Lab notes: {sanitize_input(profile.lab_notes)}")
        return "\n".join(lines)

    def _prepare(
        self,
        request: GenerateFormulaRequest,
    ) -> Tuple[int, str, List[ChatMessage], CompletionOptions]:
        validate_user_id(request.user_id)
        if request.name is not None:
            validate_formula_name(request.name)
        capsule_count = validate_capsule_count(request.capsule_count, self.default_capsule_count)
        system_prompt = self.build_system_prompt(request.health_profile, capsule_count)
        options = CompletionOptions(
            model=request.model,
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            use_tools=True,
        )
        return capsule_count, system_prompt, self._initial_history(request.messages), options

    @staticmethod
    def _initial_history(messages: List[ChatMessage]) -> List[ChatMessage]:
        history = [ChatMessage(role=m.role, content=sanitize_input(m.content)) for m in messages]
        # Conversations must open and close on a user turn
        if history and history[0].role != "user":
            history.insert(0, ChatMessage(role="user", content="Hello"))
        if not history or history[-1].role != "user":
            history.append(ChatMessage(role="user", content=DEFAULT_USER_TURN))
        return history

    @staticmethod
    def _repair_turns(
        assistant_text: str,
        tool_call: Optional[ToolCall],
        failure: ValidationFailure,
    ) -> List[ChatMessage]:
        parts = []
        if assistant_text.strip():
            parts.append(assistant_text.strip())
        if tool_call is not None:
            parts.append(f"[create_formula called with: {tool_call.raw_arguments}]")
        if not parts:
            parts.append("[No formula was produced]")
        return [
            ChatMessage(role="assistant", content="\n\n".join(parts)),
            ChatMessage(role="user", content=failure.to_feedback()),
        ]

    # ─── Results ───────────────────────────────────────────────────────────────

    async def _persist(self, request: GenerateFormulaRequest, draft: FormulaDraft) -> Formula:
        draft = apply_interaction_warnings(draft, request.health_profile.medications)
        formula = await asyncio.to_thread(
            self.store.create,
            request.user_id,
            draft,
            name=request.name,
            supersede=True,
        )
        logger.info(f"Persisted formula v{formula.version} for user {request.user_id} ({formula.total_mg}mg)")
        return formula

    def _accepted(
        self,
        formula: Formula,
        draft: FormulaDraft,
        rounds: int,
        result: Optional[CompletionResult],
    ) -> GenerationOutcome:
        return GenerationOutcome(
            status="accepted",
            formula=formula,
            adjustments=draft.adjustments,
            attempts=rounds,
            provider=self.gateway.provider_name,
            model=result.model if result is not None else self.gateway.model,
        )

    def _rejected(self, failure: ValidationFailure, rounds: int) -> GenerationOutcome:
        return GenerationOutcome(
            status="rejected",
            failure=failure,
            message=GENERATION_FAILED_MESSAGE,
            attempts=rounds,
            provider=self.gateway.provider_name,
            model=self.gateway.model,
        )
