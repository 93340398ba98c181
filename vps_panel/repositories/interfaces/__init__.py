from .user import IUserRepository
from .instance import IInstanceRepository
from .snapshot import ISnapshotRepository
from .ledger import ICapacityLedgerRepository
from .audit import IAuditRepository, AuditQuery
