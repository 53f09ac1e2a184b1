"""Engine configuration: validated settings and component factories.

Quick start::

    from flowspine.core.config import load_settings, create_repository

    settings = load_settings(database_path="data/flowspine.db")
    repository = create_repository(settings)

Architecture::

    settings.py       EngineSettings (pydantic-settings) + load_settings()
    factory.py        create_repository / configure_from_settings

Guardrails:
    ❌ Reading FLOWSPINE_* env vars ad hoc in each module
    ✅ ``load_settings()`` once, then pass the object to each component
"""

from .factory import configure_from_settings, create_repository
from .settings import EngineSettings, load_settings

__all__ = [
    "EngineSettings",
    "load_settings",
    "create_repository",
    "configure_from_settings",
]
