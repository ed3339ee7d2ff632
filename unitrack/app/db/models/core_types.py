import enum

class Role(str, enum.Enum):
    admin = "admin"
    manager = "manager"
    staff = "staff"

class LocationType(str, enum.Enum):
    warehouse = "warehouse"
    distribution = "distribution"
    retail = "retail"

class UnitStatus(str, enum.Enum):
    available = "available"
    reserved = "reserved"
    in_transit = "in_transit"
    consumed = "consumed"
    sold = "sold"
    damaged = "damaged"
    expired = "expired"
    sample = "sample"
    adjustment = "adjustment"

class ScanOperation(str, enum.Enum):
    receiving = "receiving"
    transfer_out = "transfer_out"
    transfer_in = "transfer_in"
    audit = "audit"
    damage = "damage"
    reprint = "reprint"
    convert = "convert"
    sale = "sale"
    adjustment = "adjustment"
    bin_move = "bin_move"

class OperationStatus(str, enum.Enum):
    success = "success"
    discrepancy = "discrepancy"

class ScanOutcome(str, enum.Enum):
    succeeded = "succeeded"
    rejected = "rejected"

class TransferStatus(str, enum.Enum):
    draft = "draft"
    approved = "approved"
    in_transit = "in_transit"
    completed = "completed"
    cancelled = "cancelled"

class ItemCondition(str, enum.Enum):
    good = "good"
    damaged = "damaged"
    expired = "expired"
    rejected = "rejected"
