# Core module - Turn loop, state machine and error taxonomy
# The orchestrator is the only component that talks to the model
#
# Orchestrator lives in core.orchestrator (it imports tools, api and memory)

from .state_machine import StateMachine, TurnState, StateTransition
from .errors import (
    ErrorHandler, ErrorKind, ErrorRecord, ToolsmithError,
    StoreError, NameCollisionError, InvalidSchemaError, NotFoundError,
    SecurityRejectedError, ToolTimeoutError, ProviderError,
)

__all__ = [
    "StateMachine", "TurnState", "StateTransition",
    "ErrorHandler", "ErrorKind", "ErrorRecord", "ToolsmithError",
    "StoreError", "NameCollisionError", "InvalidSchemaError", "NotFoundError",
    "SecurityRejectedError", "ToolTimeoutError", "ProviderError",
]
