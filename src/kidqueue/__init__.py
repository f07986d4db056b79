"""School pickup queue: position bookkeeping and real-time fan-out."""

# Public API - Pydantic schemas
from .schemas import (
    Actor,
    ApiResponse,
    DequeueResult,
    EnqueueResult,
    QueueAction,
    QueueEntryRecord,
    QueueEvent,
    QueueSnapshot,
    QueueStatus,
    UserRole,
    VehicleEnqueueResult,
)

# Public API - Services
from .broadcast import (
    Broadcaster,
    InMemoryBroadcaster,
    MQTTBroadcaster,
    NoOpBroadcaster,
    get_broadcaster,
    shutdown_broadcaster,
)
from .config import Config
from .database import create_db_engine, create_session_factory, init_db
from .handlers import QueueHandlers
from .queue_manager import QueueManager
from .registry import SchoolRegistry
from .viewer import QueueViewer

__all__ = [
    # Configuration
    "Config",
    # Database
    "create_db_engine",
    "create_session_factory",
    "init_db",
    # Services
    "QueueManager",
    "QueueHandlers",
    "QueueViewer",
    "SchoolRegistry",
    # Broadcasting
    "Broadcaster",
    "InMemoryBroadcaster",
    "MQTTBroadcaster",
    "NoOpBroadcaster",
    "get_broadcaster",
    "shutdown_broadcaster",
    # Pydantic Models
    "Actor",
    "ApiResponse",
    "DequeueResult",
    "EnqueueResult",
    "QueueAction",
    "QueueEntryRecord",
    "QueueEvent",
    "QueueSnapshot",
    "QueueStatus",
    "UserRole",
    "VehicleEnqueueResult",
]
