"""Storage layer - Database schemas and repositories."""

from futures_gap_monitor.storage.database import (
    DatabaseManager,
    build_engine,
    to_async_url,
)
from futures_gap_monitor.storage.models import (
    AlertConfigModel,
    Base,
    ContractModel,
    GapAlertModel,
    GapObservationModel,
    InstrumentModel,
    TickModel,
)
from futures_gap_monitor.storage.repos import (
    AlertConfigDTO,
    AlertConfigRepository,
    BaselineRow,
    ContractRepository,
    GapAlertDTO,
    GapAlertRepository,
    GapObservationDTO,
    GapObservationRepository,
    InstrumentDTO,
    InstrumentRepository,
    TickRepository,
)

__all__ = [
    "AlertConfigDTO",
    "AlertConfigModel",
    "AlertConfigRepository",
    "Base",
    "BaselineRow",
    "ContractModel",
    "ContractRepository",
    "DatabaseManager",
    "GapAlertDTO",
    "GapAlertModel",
    "GapAlertRepository",
    "GapObservationDTO",
    "GapObservationModel",
    "GapObservationRepository",
    "InstrumentDTO",
    "InstrumentModel",
    "InstrumentRepository",
    "TickModel",
    "TickRepository",
    "build_engine",
    "to_async_url",
]
