"""Model registry persisted as JSON plus first-match capability selection."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any

from subagent_orchestrator.orchestrator.models import (
    ContextLength,
    Cost,
    CostPreference,
    Difficulty,
    ErrorKind,
    ModelCapabilities,
    ModelConfig,
    OrchestratorError,
    Reasoning,
    Speed,
)
from subagent_orchestrator.storage.common import load_json, write_json_atomic

logger = logging.getLogger(__name__)

DEFAULT_MODELS: tuple[tuple[str, Speed, Cost, ContextLength, Reasoning], ...] = (
    (
        "anthropic/claude-sonnet-4-5",
        Speed.MEDIUM,
        Cost.MEDIUM,
        ContextLength.LONG,
        Reasoning.ADVANCED,
    ),
    (
        "anthropic/claude-haiku-4-5",
        Speed.FAST,
        Cost.LOW,
        ContextLength.MEDIUM,
        Reasoning.MEDIUM,
    ),
    (
        "gemini-2.0-flash",
        Speed.VERY_FAST,
        Cost.VERY_LOW,
        ContextLength.MEDIUM,
        Reasoning.MEDIUM,
    ),
    (
        "gemini-2.0-pro",
        Speed.MEDIUM,
        Cost.MEDIUM,
        ContextLength.LONG,
        Reasoning.ADVANCED,
    ),
)

COST_WINDOWS: dict[CostPreference, frozenset[Cost]] = {
    CostPreference.LOW: frozenset({Cost.VERY_LOW, Cost.LOW}),
    CostPreference.MEDIUM: frozenset({Cost.LOW, Cost.MEDIUM}),
    CostPreference.HIGH: frozenset({Cost.MEDIUM, Cost.HIGH}),
}

REASONING_WINDOWS: dict[Difficulty, frozenset[Reasoning]] = {
    Difficulty.BASIC: frozenset(Reasoning),
    Difficulty.MEDIUM: frozenset({Reasoning.MEDIUM, Reasoning.ADVANCED, Reasoning.COMPLEX}),
    Difficulty.COMPLEX: frozenset({Reasoning.ADVANCED, Reasoning.COMPLEX}),
}

_CAPABILITY_FIELDS: tuple[tuple[str, type[Speed | Cost | ContextLength | Reasoning]], ...] = (
    ("speed", Speed),
    ("cost", Cost),
    ("context_length", ContextLength),
    ("reasoning", Reasoning),
)


def default_models() -> list[ModelConfig]:
    return [
        ModelConfig(
            model_id=model_id,
            capabilities=ModelCapabilities(
                speed=speed,
                cost=cost,
                context_length=context_length,
                reasoning=reasoning,
            ),
        )
        for model_id, speed, cost, context_length, reasoning in DEFAULT_MODELS
    ]


def flat_capabilities() -> ModelCapabilities:
    """Capability profile assigned by a bulk replace."""

    return ModelCapabilities(
        speed=Speed.MEDIUM,
        cost=Cost.MEDIUM,
        context_length=ContextLength.MEDIUM,
        reasoning=Reasoning.MEDIUM,
    )


def parse_capabilities(raw: dict[str, Any]) -> ModelCapabilities:
    """Validate capability fields against their enumerations.

    The first invalid field rejects the whole profile. Keys outside the four
    enumerated fields are kept as open extensions.
    """

    values: dict[str, Any] = {}
    for name, enum_type in _CAPABILITY_FIELDS:
        value = raw.get(name)
        try:
            values[name] = enum_type(value)
        except ValueError as error:
            allowed = ", ".join(member.value for member in enum_type)
            raise OrchestratorError(
                ErrorKind.VALIDATION,
                f"Invalid {name} value {value!r}; expected one of: {allowed}",
                {"field": name, "value": value},
            ) from error
    extra = {key: value for key, value in raw.items() if key not in values}
    return ModelCapabilities(extra=extra, **values)


class ModelRegistry:
    """Ordered pool of execution models; registry order is selection priority."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._models: list[ModelConfig] = []
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            self._models = default_models()
            self._save()
            logger.info("Created default model registry at %s", self.path)
            return
        try:
            payload = load_json(self.path)
        except (OSError, ValueError):
            logger.exception(
                "Model registry %s is unreadable; using built-in defaults.",
                self.path,
            )
            self._models = default_models()
            return

        entries = payload.get("models") if isinstance(payload, dict) else payload
        if not isinstance(entries, list):
            logger.error(
                "Model registry %s has unexpected shape; using built-in defaults.",
                self.path,
            )
            self._models = default_models()
            return

        models: list[ModelConfig] = []
        for entry in entries:
            model = _parse_entry(entry)
            if model is None:
                logger.warning("Skipping malformed model registry entry: %r", entry)
                continue
            models.append(model)
        self._models = models
        logger.debug("Loaded %d models from %s", len(models), self.path)

    def _save(self) -> None:
        write_json_atomic(self.path, [model.to_dict() for model in self._models])

    def list(self) -> list[ModelConfig]:
        return list(self._models)

    def get(self, model_id: str) -> ModelConfig | None:
        return next((model for model in self._models if model.model_id == model_id), None)

    def add(self, model_id: str, capabilities: dict[str, Any]) -> ModelConfig:
        """Add a model or overwrite an existing one in place."""

        model_id = model_id.strip()
        if not model_id:
            raise OrchestratorError(ErrorKind.VALIDATION, "Model id must not be empty.")
        model = ModelConfig(model_id=model_id, capabilities=parse_capabilities(capabilities))
        for index, existing in enumerate(self._models):
            if existing.model_id == model_id:
                self._models[index] = model
                break
        else:
            self._models.append(model)
        self._save()
        return model

    def remove(self, model_id: str) -> None:
        if self.get(model_id) is None:
            raise OrchestratorError(
                ErrorKind.NOT_FOUND,
                f"Model not found: {model_id}",
                {"model_id": model_id},
            )
        self._models = [model for model in self._models if model.model_id != model_id]
        self._save()

    def replace_all(self, model_ids: Sequence[str]) -> list[ModelConfig]:
        """Replace the pool with the given ids, all on the flat medium profile."""

        unique_ids = list(dict.fromkeys(item.strip() for item in model_ids if item.strip()))
        if not unique_ids:
            raise OrchestratorError(
                ErrorKind.VALIDATION,
                "Model list must contain at least one id.",
            )
        self._models = [
            ModelConfig(model_id=model_id, capabilities=flat_capabilities())
            for model_id in unique_ids
        ]
        self._save()
        return self.list()

    def reset(self) -> list[ModelConfig]:
        self._models = default_models()
        self._save()
        return self.list()

    def select_model(
        self,
        difficulty: Difficulty | str,
        required_capabilities: Iterable[str],
        cost_preference: CostPreference | str,
        allow_list: Sequence[str] | None = None,
    ) -> ModelConfig | None:
        """Return the first model in registry order meeting every constraint."""

        try:
            reasoning_window = REASONING_WINDOWS[Difficulty(difficulty)]
        except ValueError as error:
            raise OrchestratorError(
                ErrorKind.VALIDATION,
                f"Unknown difficulty: {difficulty}",
                {"difficulty": str(difficulty)},
            ) from error
        try:
            cost_window = COST_WINDOWS[CostPreference(cost_preference)]
        except ValueError as error:
            raise OrchestratorError(
                ErrorKind.VALIDATION,
                f"Unknown cost preference: {cost_preference}",
                {"cost_preference": str(cost_preference)},
            ) from error

        required = tuple(required_capabilities)
        candidates = self._models
        if allow_list:
            allowed = set(allow_list)
            candidates = [model for model in candidates if model.model_id in allowed]

        for model in candidates:
            capabilities = model.capabilities
            if not all(capabilities.has_capability(tag) for tag in required):
                continue
            if capabilities.cost not in cost_window:
                continue
            if capabilities.reasoning not in reasoning_window:
                continue
            return model
        return None


class ModelPreferenceNotes:
    """Free-text operator notes per model; informational only."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def list(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            payload = load_json(self.path)
        except (OSError, ValueError):
            logger.exception("Model preferences %s are unreadable; ignoring.", self.path)
            return {}
        if not isinstance(payload, dict):
            return {}
        return {str(key): str(value) for key, value in payload.items()}

    def set(self, model_id: str, note: str) -> dict[str, str]:
        if not model_id.strip():
            raise OrchestratorError(ErrorKind.VALIDATION, "Model id must not be empty.")
        notes = self.list()
        notes[model_id.strip()] = note
        write_json_atomic(self.path, notes)
        return notes


def _parse_entry(entry: Any) -> ModelConfig | None:
    if not isinstance(entry, dict):
        return None
    model_id = entry.get("id")
    capabilities = entry.get("capabilities")
    if not isinstance(model_id, str) or not model_id.strip() or not isinstance(capabilities, dict):
        return None
    try:
        return ModelConfig(model_id=model_id, capabilities=parse_capabilities(capabilities))
    except OrchestratorError:
        return None


def format_model_line(model: ModelConfig) -> str:
    capabilities = model.capabilities
    return (
        f"{model.model_id}: speed={capabilities.speed.value} cost={capabilities.cost.value} "
        f"context={capabilities.context_length.value} "
        f"reasoning={capabilities.reasoning.value}"
        + (f" extra={json.dumps(capabilities.extra, sort_keys=True)}" if capabilities.extra else "")
    )
