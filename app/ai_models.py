from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, Optional


@dataclass(frozen=True)
class ModelDescriptor:
    id: str
    label: str
    api_identifier: str
    description: str


MODELS: tuple[ModelDescriptor, ...] = (
    ModelDescriptor(
        id="gpt-4o-mini",
        label="GPT 4o mini",
        api_identifier="gpt-4o-mini",
        description="Small model for fast, lightweight tasks",
    ),
    ModelDescriptor(
        id="gpt-4o",
        label="GPT 4o",
        api_identifier="gpt-4o",
        description="For complex, multi-step tasks",
    ),
)


def find_model(model_id: str, models: Iterable[ModelDescriptor] = MODELS) -> Optional[ModelDescriptor]:
    return next((m for m in models if m.id == model_id), None)
