"""Database infrastructure package."""

from parkingmate.infrastructure.db.models import (
    Base,
    CameraEventDB,
    CustomerDB,
    GuestDB,
    NotificationOutboxDB,
    OtpCodeDB,
    ParkingSessionDB,
    RegistrationTokenDB,
    VehicleDB,
)
from parkingmate.infrastructure.db.repository import (
    CameraEventRepository,
    CustomerRepository,
    GuestRepository,
    OtpCodeRepository,
    OutboxRepository,
    ParkingSessionRepository,
    RegistrationTokenRepository,
    VehicleRepository,
)
from parkingmate.infrastructure.db.session import (
    close_db,
    create_session_factory,
    create_tables,
    get_session,
    get_session_factory,
    init_db,
    ping_db,
)

__all__ = [
    # Models
    "Base",
    "CameraEventDB",
    "CustomerDB",
    "GuestDB",
    "NotificationOutboxDB",
    "OtpCodeDB",
    "ParkingSessionDB",
    "RegistrationTokenDB",
    "VehicleDB",
    # Repositories
    "CameraEventRepository",
    "CustomerRepository",
    "GuestRepository",
    "OtpCodeRepository",
    "OutboxRepository",
    "ParkingSessionRepository",
    "RegistrationTokenRepository",
    "VehicleRepository",
    # Session
    "close_db",
    "create_session_factory",
    "create_tables",
    "get_session",
    "get_session_factory",
    "init_db",
    "ping_db",
]
