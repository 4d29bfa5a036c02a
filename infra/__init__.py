# Infrastructure module - Logging, configuration and persistence

from .logging import (
    get_logger, configure_logging, TurnContext,
    log_turn_end, get_turn_id, generate_turn_id
)
from .config import (
    ConfigManager, ConfigError, SecretManager, ToolsmithConfig, load_config
)
from .database import (
    DatabaseManager, ToolRecord, TurnRecord, NoteRecord,
    DatabaseError, SchemaMismatchError, MigrationFailedError,
    SCHEMA_VERSION
)

__all__ = [
    # Logging
    "get_logger",
    "configure_logging",
    "TurnContext",
    "log_turn_end",
    "get_turn_id",
    "generate_turn_id",
    # Configuration
    "ConfigManager",
    "ConfigError",
    "SecretManager",
    "ToolsmithConfig",
    "load_config",
    # Database
    "DatabaseManager",
    "ToolRecord",
    "TurnRecord",
    "NoteRecord",
    "DatabaseError",
    "SchemaMismatchError",
    "MigrationFailedError",
    "SCHEMA_VERSION",
]
