"""Shared test fixtures for the formula engine tests."""
import os
import tempfile

# Point the app's default store at a throwaway database before any
# formula_engine module reads its settings.
os.environ["FORMULA_DB_PATH"] = os.path.join(
    tempfile.mkdtemp(prefix="formula-engine-tests-"), "formulas.db"
)
os.environ.setdefault("LOG_LEVEL", "WARNING")

import json
from typing import Any, Dict, List, Optional

import pytest

from formula_engine.models.formula import FormulaDraft, FormulaLine
from formula_engine.models.provider import CompletionResult, StreamChunk, ToolCall
from formula_engine.services.formula_store import FormulaStore
from formula_engine.services.formula_validator import FormulaValidator
from formula_engine.services.ingredient_catalog import build_default_catalog


# Eight catalog-valid items totalling 2135mg
VALID_BASES = [
    {"ingredient": "Adrenal Support", "amount": 420, "unit": "mg"},
]
VALID_ADDITIONS = [
    {"ingredient": "Ashwagandha", "amount": 600, "unit": "mg"},
    {"ingredient": "Garlic", "amount": 200, "unit": "mg"},
    {"ingredient": "Vitamin C", "amount": 90, "unit": "mg"},
    {"ingredient": "Hawthorn Berry", "amount": 75, "unit": "mg"},
    {"ingredient": "Milk Thistle", "amount": 300, "unit": "mg"},
    {"ingredient": "L-Theanine", "amount": 200, "unit": "mg"},
    {"ingredient": "Quercetin", "amount": 250, "unit": "mg"},
]
VALID_TOTAL_MG = 2135


def build_payload(
    bases: Optional[List[Dict[str, Any]]] = None,
    additions: Optional[List[Dict[str, Any]]] = None,
    total_mg: Any = VALID_TOTAL_MG,
) -> Dict[str, Any]:
    """create_formula arguments; defaults to a payload the validator accepts."""
    return {
        "bases": [dict(item) for item in (VALID_BASES if bases is None else bases)],
        "additions": [dict(item) for item in (VALID_ADDITIONS if additions is None else additions)],
        "totalMg": total_mg,
        "rationale": "Supports stress resilience and sleep",
        "warnings": ["Consult your physician before starting"],
        "disclaimers": ["Not evaluated by the FDA"],
    }


def formula_tool_call(payload: Dict[str, Any]) -> ToolCall:
    return ToolCall(
        id="toolu_01",
        name="create_formula",
        input=payload,
        raw_arguments=json.dumps(payload),
    )


class FakeGateway:
    """
    Stands in for ProviderGateway.

    ``complete`` returns the queued results in order; ``stream`` yields the
    queued chunk lists in order and records when the stream was closed.
    """

    provider_name = "anthropic"
    model = "claude-sonnet-4-5"

    def __init__(self, results=None, streams=None):
        self.results = list(results or [])
        self.streams = list(streams or [])
        self.calls: List[Dict[str, Any]] = []
        self.stream_closed = False

    async def complete(self, system_prompt, history, options=None):
        self.calls.append({"system_prompt": system_prompt, "history": list(history), "options": options})
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def stream(self, system_prompt, history, options=None):
        self.calls.append({"system_prompt": system_prompt, "history": list(history), "options": options})
        chunks = self.streams.pop(0)
        try:
            for chunk in chunks:
                if isinstance(chunk, Exception):
                    raise chunk
                yield chunk
        finally:
            self.stream_closed = True


def completion(payload: Optional[Dict[str, Any]] = None, text: str = "") -> CompletionResult:
    """A buffered completion that calls create_formula with ``payload`` (or no tool)."""
    return CompletionResult(
        provider="anthropic",
        model="claude-sonnet-4-5",
        text=text,
        tool_calls=[formula_tool_call(payload)] if payload is not None else [],
        stop_reason="tool_use" if payload is not None else "end_turn",
    )


def stream_chunks(payload: Dict[str, Any], texts=("Building ", "your formula.")) -> List[StreamChunk]:
    chunks = [StreamChunk(type="text", text=t) for t in texts]
    chunks.append(StreamChunk(type="tool_use", tool_call=formula_tool_call(payload)))
    return chunks


@pytest.fixture(scope="session")
def catalog():
    """The bundled default catalog."""
    return build_default_catalog()


@pytest.fixture
def validator(catalog):
    return FormulaValidator(catalog=catalog)


@pytest.fixture
def store(tmp_path):
    """A fresh formula store per test."""
    return FormulaStore(str(tmp_path / "formulas.db"))


@pytest.fixture
def draft():
    """Factory for persisted-ready drafts."""
    def _make(amounts=(420, 600), capsule_count: int = 9) -> FormulaDraft:
        bases = [FormulaLine(ingredient="Adrenal Support", amount=amounts[0])]
        additions = [FormulaLine(ingredient="Ashwagandha", amount=amounts[1])]
        return FormulaDraft(
            bases=bases,
            additions=additions,
            total_mg=sum(amounts),
            rationale="Stress support",
            capsule_count=capsule_count,
        )
    return _make
