"""ONTAP storage driver.

Drivers for the ontap-nas, ontap-nas-flexgroup, ontap-san and
ontap-san-economy backend types, built on an abstract management client:
- OntapClient: appliance operations with classified errors
- OntapStorageDriver: pool discovery, admission, clones, snapshots, access
"""

from .api import OntapClient
from .driver import OntapStorageDriver, create_driver

__all__ = ["OntapClient", "OntapStorageDriver", "create_driver"]
