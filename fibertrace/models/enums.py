import enum


class Collection(enum.Enum):
    jobs = "jobs"
    nodes = "nodes"
    routes = "routes"
    closures = "closures"
    splice_maps = "splice_maps"
    inventory = "inventory"


class JobStatus(enum.Enum):
    pending = "Pending"
    in_progress = "In Progress"
    completed = "Completed"
    on_hold = "On Hold"


class JobPriority(enum.Enum):
    low = "Low"
    medium = "Medium"
    high = "High"
    critical = "Critical"


class NodeType(enum.Enum):
    olt = "OLT"
    splitter = "Splitter"
    fat = "FAT"
    atb = "ATB"
    closure = "Closure"


class NodeCondition(enum.Enum):
    new = "new"
    good = "good"
    degraded = "degraded"
    faulty = "faulty"


class PowerStatus(enum.Enum):
    normal = "Normal"
    warning = "Warning"
    critical = "Critical"
    unknown = "Unknown"


class RouteType(enum.Enum):
    backbone = "Backbone"
    distribution = "Distribution"
    access = "Access"
    drop = "Drop"


class SpliceQuality(enum.Enum):
    good = "Good"
    high_loss = "High-Loss"
    fault = "Fault"


class StockStatus(enum.Enum):
    out_of_stock = "Out of Stock"
    low_stock = "Low Stock"
    in_stock = "In Stock"
    overstocked = "Overstocked"


class SyncState(enum.Enum):
    idle = "idle"
    syncing = "syncing"
    error = "error"
