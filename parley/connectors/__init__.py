from __future__ import annotations

import importlib
from typing import Any

from parley.connectors.base import LLMConnector

CONNECTOR_MAP: dict[str, str] = {
    "ollama": "parley.connectors.ollama.OllamaConnector",
    "openai": "parley.connectors.openai.OpenAIConnector",
}


def get_connector(name: str, model: str | None = None, **options: Any) -> LLMConnector:
    """Factory: resolve connector name to class and instantiate."""
    if name not in CONNECTOR_MAP:
        raise ValueError(f"Unknown connector '{name}'. Available: {list(CONNECTOR_MAP)}")
    module_path, class_name = CONNECTOR_MAP[name].rsplit(".", 1)
    module = importlib.import_module(module_path)
    cls = getattr(module, class_name)
    return cls(model=model, **options)
