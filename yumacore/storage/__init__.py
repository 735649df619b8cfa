from yumacore.storage.snapshot import load_snapshot, save_snapshot
from yumacore.storage.state import SubnetState
from yumacore.storage.store import InMemorySubnetStore, SubnetStore
