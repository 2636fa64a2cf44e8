from vessel.backends.local import LocalWorkloadClient
from vessel.backends.store import InstanceRecord, InstanceStore

__all__ = ["InstanceRecord", "InstanceStore", "LocalWorkloadClient"]
