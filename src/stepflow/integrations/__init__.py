"""External system integrations"""

# Event Bus
from .event_bus import EventBus, Event

# Units of work
from .unit_registry import UnitRegistry, UnitDefinition
from .builtin_units import (
    ConfigStore,
    InMemoryConfigStore,
    FileConfigStore,
    register_builtin_units
)
from .document_units import register_document_units

# Validators
from .validators import SchemaValidator

__all__ = [
    "EventBus",
    "Event",
    "UnitRegistry",
    "UnitDefinition",
    "ConfigStore",
    "InMemoryConfigStore",
    "FileConfigStore",
    "register_builtin_units",
    "register_document_units",
    "SchemaValidator"
]
