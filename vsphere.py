# vsphere.py - VDI Power vSphere Inventory and Power Operations
# Version 1.0 - October 2026
# Author - VDI Operations Team
# VM selection and power transitions through the vSphere API (pyVmomi)

"""
vSphere Inventory Module

Wraps one vCenter/ESXi session for the duration of a run:

- Resolve a location (host, cluster, folder, datacenter or resource pool)
  and list the VMs under it matching a name glob
- Read power state and VMware Tools state
- Request guest shutdown, power off and power on

Records returned here are snapshots; callers re-query instead of caching.
"""

import fnmatch
import logging
from dataclasses import dataclass, field
from enum import Enum

from pyVim import connect
from pyVim.task import WaitForTask
from pyVmomi import vim

logger = logging.getLogger(__name__)

#==============================================================================
# MODULE CONFIGURATION
#==============================================================================

# Inventory object types a location name may refer to, in lookup order
LOCATION_TYPES = [
    vim.HostSystem,
    vim.ClusterComputeResource,
    vim.Folder,
    vim.Datacenter,
    vim.ResourcePool,
]

#==============================================================================
# DATA MODEL
#==============================================================================

class PowerState(Enum):
    """VM power state"""
    POWERED_ON = 'poweredOn'
    POWERED_OFF = 'poweredOff'
    SUSPENDED = 'suspended'
    UNKNOWN = 'unknown'

    @classmethod
    def from_vim(cls, value):
        try:
            return cls(str(value))
        except ValueError:
            return cls.UNKNOWN


class ToolsStatus(Enum):
    """VMware Tools running state inside the guest"""
    RUNNING = 'guestToolsRunning'
    NOT_RUNNING = 'guestToolsNotRunning'
    UNKNOWN = 'unknown'

    @classmethod
    def from_vim(cls, value):
        if value == 'guestToolsExecutingScripts':
            return cls.NOT_RUNNING
        try:
            return cls(str(value))
        except ValueError:
            return cls.UNKNOWN


@dataclass
class VmRecord:
    """Read-only snapshot of a VM as seen by one inventory query"""
    name: str
    location: str
    power_state: PowerState = PowerState.UNKNOWN
    tools_status: ToolsStatus = ToolsStatus.UNKNOWN
    ref: object = field(default=None, repr=False, compare=False)

    @property
    def key(self) -> tuple:
        return (self.location, self.name)

#==============================================================================
# HELPER FUNCTIONS
#==============================================================================

def get_all_objs(si_content, vimtype, container=None):
    """
    Method that populates objects of type vimtype such as
    vim.VirtualMachine, vim.HostSystem, vim.Datacenter, vim.ClusterComputeResource
    :param si_content: serviceinstance.content
    :param vimtype: VIM object type name (list)
    :param container: optional inventory object to search under (default rootFolder)
    :return: dict of {object: name}
    """
    obj = {}
    root = container if container is not None else si_content.rootFolder
    view = si_content.viewManager.CreateContainerView(root, vimtype, True)
    try:
        for managed_object_ref in view.view:
            obj.update({managed_object_ref: managed_object_ref.name})
    finally:
        view.Destroy()
    return obj


def _read_power_state(vm) -> PowerState:
    return PowerState.from_vim(vm.runtime.powerState)


def _read_tools_status(vm) -> ToolsStatus:
    return ToolsStatus.from_vim(vm.guest.toolsRunningStatus)

#==============================================================================
# INVENTORY SESSION
#==============================================================================

class VSphereInventory:
    """One authenticated vCenter/ESXi session reused for every call of a run"""

    def __init__(self, server, user, password, port=443):
        self.server = server
        self.user = user
        self.password = password
        self.port = port
        self.si = None

    def connect(self):
        """
        Connect to the vCenter or ESXi host

        Any previous session is dropped first, ignoring errors.
        :raises: the pyVmomi/socket error if the connection fails
        """
        self.disconnect()
        self.si = connect.SmartConnect(
            host=self.server,
            user=self.user,
            pwd=self.password,
            port=int(self.port),
            disableSslCertValidation=True
        )
        logger.debug(f'Connected to {self.server}')
        return self.si

    def disconnect(self):
        """Disconnect the session (best effort)"""
        if self.si is None:
            return
        try:
            connect.Disconnect(self.si)
        except Exception as e:
            # Session may already be gone; nothing left to clean up
            logger.debug(f'Ignoring disconnect error from {self.server}: {e}')
        self.si = None

    @property
    def content(self):
        if self.si is None:
            raise RuntimeError(f'Not connected to {self.server}')
        return self.si.RetrieveContent()

    #--------------------------------------------------------------------------
    # VM selection
    #--------------------------------------------------------------------------

    def resolve_location(self, name):
        """
        Find the inventory object named by a host list entry

        :param name: Host, cluster, folder, datacenter or resource pool name
        :return: Managed object
        :raises LookupError: if nothing in the inventory has that name
        """
        content = self.content
        for vimtype in LOCATION_TYPES:
            for obj, obj_name in get_all_objs(content, [vimtype]).items():
                if obj_name == name:
                    return obj
        raise LookupError(f'Location {name} not found on {self.server}')

    def find_vms(self, location, name_filter='*') -> list:
        """
        List the VMs under a location whose names match a glob

        :param location: Location name from the host list
        :param name_filter: Glob pattern (case-insensitive), default all
        :return: List of VmRecord sorted by name
        """
        container = self.resolve_location(location)
        pattern = (name_filter or '*').lower()
        records = []
        for vm, vm_name in get_all_objs(self.content, [vim.VirtualMachine], container).items():
            if not fnmatch.fnmatchcase(vm_name.lower(), pattern):
                continue
            records.append(self._snapshot(vm, vm_name, location))
        records.sort(key=lambda r: r.name)
        return records

    def find_vms_by_name(self, name) -> list:
        """Every VM in the inventory with exactly this name"""
        return [self._snapshot(vm, vm_name, '')
                for vm, vm_name in get_all_objs(self.content, [vim.VirtualMachine]).items()
                if vm_name == name]

    def _snapshot(self, vm, vm_name, location) -> VmRecord:
        try:
            power_state = _read_power_state(vm)
        except Exception as e:
            logger.debug(f'{vm_name}: unable to read power state: {e}')
            power_state = PowerState.UNKNOWN
        return VmRecord(name=vm_name, location=location,
                        power_state=power_state, ref=vm)

    #--------------------------------------------------------------------------
    # State queries
    #--------------------------------------------------------------------------

    def get_power_state(self, record: VmRecord) -> PowerState:
        return _read_power_state(record.ref)

    def get_tools_status(self, record: VmRecord) -> ToolsStatus:
        return _read_tools_status(record.ref)

    #--------------------------------------------------------------------------
    # Power operations
    #--------------------------------------------------------------------------

    def shutdown_guest(self, record: VmRecord):
        """Ask the guest OS to shut down (returns before the VM is off)"""
        record.ref.ShutdownGuest()

    def power_off(self, record: VmRecord):
        """Hard power off and wait for the task"""
        WaitForTask(record.ref.PowerOffVM_Task())

    def power_on(self, record: VmRecord):
        """Power on and wait for the task"""
        WaitForTask(record.ref.PowerOnVM_Task())
