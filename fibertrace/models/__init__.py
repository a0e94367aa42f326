from fibertrace.models.enums import (  # noqa: F401
    Collection,
    JobPriority,
    JobStatus,
    NodeCondition,
    NodeType,
    PowerStatus,
    RouteType,
    SpliceQuality,
    StockStatus,
    SyncState,
)
from fibertrace.models.storage import LocalKeyValue  # noqa: F401
from fibertrace.models.sync import ServerRecord  # noqa: F401
