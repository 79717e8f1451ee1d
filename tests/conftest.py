#!/usr/bin/env python3
# conftest.py - VDI Power Pytest Configuration and Fixtures
# Version 1.0 - October 2026
# Author - VDI Operations Team
# Shared fixtures for all test modules

import pytest
import os
import sys
import fnmatch
import tempfile
from unittest.mock import MagicMock

# Add parent directory to path for imports
parent_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, parent_dir)

from vsphere import VmRecord, PowerState, ToolsStatus

#==============================================================================
# FAKE SERVICES
#==============================================================================

class FakeInventory:
    """
    In-memory stand-in for VSphereInventory.

    hosts maps host name -> list of VmRecord. tools maps VM name ->
    ToolsStatus. off_after maps VM name -> number of power state polls
    after a guest shutdown before the VM reports poweredOff (None = never).
    """

    def __init__(self):
        self.hosts = {}
        self.tools = {}
        self.off_after = {}
        self.polls = {}
        self.calls = []
        self.fail = {}

    def add_vm(self, host, name, power_state=PowerState.POWERED_ON,
               tools=ToolsStatus.RUNNING, off_after=1):
        vm = VmRecord(name=name, location=host, power_state=power_state)
        self.hosts.setdefault(host, []).append(vm)
        self.tools[name] = tools
        self.off_after[name] = off_after
        return vm

    def _check(self, op, name):
        self.calls.append((op, name))
        error = self.fail.get((op, name))
        if error:
            raise error

    def find_vms(self, location, name_filter='*'):
        self._check('find_vms', location)
        if location not in self.hosts:
            raise LookupError(f'Location {location} not found')
        return [vm for vm in self.hosts[location]
                if fnmatch.fnmatchcase(vm.name.lower(), (name_filter or '*').lower())]

    def find_vms_by_name(self, name):
        self._check('find_vms_by_name', name)
        return [vm for vms in self.hosts.values() for vm in vms if vm.name == name]

    def get_power_state(self, vm):
        self._check('get_power_state', vm.name)
        if vm.power_state == PowerState.POWERED_ON and vm.name in self.polls:
            self.polls[vm.name] += 1
            limit = self.off_after.get(vm.name)
            if limit is not None and self.polls[vm.name] >= limit:
                vm.power_state = PowerState.POWERED_OFF
        return vm.power_state

    def get_tools_status(self, vm):
        self._check('get_tools_status', vm.name)
        return self.tools.get(vm.name, ToolsStatus.UNKNOWN)

    def shutdown_guest(self, vm):
        self._check('shutdown_guest', vm.name)
        self.polls[vm.name] = 0

    def power_off(self, vm):
        self._check('power_off', vm.name)
        vm.power_state = PowerState.POWERED_OFF

    def power_on(self, vm):
        self._check('power_on', vm.name)
        vm.power_state = PowerState.POWERED_ON

    def ops(self, op):
        return [name for called, name in self.calls if called == op]


class FakeMaintenance:
    """Records maintenance flag changes; names in fail_for raise"""

    def __init__(self):
        self.flags = {}
        self.calls = []
        self.fail_for = set()

    def set_maintenance(self, vm_name, enabled):
        self.calls.append((vm_name, enabled))
        if vm_name in self.fail_for:
            raise RuntimeError(f'No Horizon machine found for {vm_name}')
        self.flags[vm_name] = enabled


class FakeClock:
    """Monotonic clock that only moves when sleep() is called"""

    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds

#==============================================================================
# FIXTURES - Fake Services
#==============================================================================

@pytest.fixture
def inventory():
    return FakeInventory()


@pytest.fixture
def maintenance():
    return FakeMaintenance()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def output():
    """Collects operator messages instead of writing them"""
    return MagicMock()

#==============================================================================
# FIXTURES - File System
#==============================================================================

@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def host_file(temp_dir):
    """Create a host list with a comment and a blank line"""
    path = os.path.join(temp_dir, 'hosts.txt')
    with open(path, 'w') as f:
        f.write('esx-01a.corp.local\n\n# retired\nesx-02a.corp.local\n')
    return path


@pytest.fixture
def running_list(temp_dir):
    return os.path.join(temp_dir, 'running_vms.txt')


@pytest.fixture
def run_context(inventory, maintenance, running_list, fake_clock, output, monkeypatch):
    """RunContext wired to fakes, with the drain driven by the fake clock"""
    import vdipower
    import drain

    real_drain = drain.drain_shutdowns

    def fast_drain(*args, **kwargs):
        kwargs.setdefault('clock', fake_clock)
        kwargs.setdefault('sleep', fake_clock.sleep)
        return real_drain(*args, **kwargs)

    monkeypatch.setattr(vdipower, 'drain_shutdowns', fast_drain)

    return vdipower.RunContext(
        inventory=inventory,
        maintenance=maintenance,
        running_list=running_list,
        poll_interval=60,
        max_wait=600,
        output=output,
    )


@pytest.fixture
def config_ini(temp_dir):
    """Create a temporary config.ini"""
    path = os.path.join(temp_dir, 'config.ini')
    with open(path, 'w') as f:
        f.write(f"""[VDIPOWER]
logfile = {os.path.join(temp_dir, 'vdipower.log')}
running_vms = {os.path.join(temp_dir, 'running_vms.txt')}
creds = {os.path.join(temp_dir, 'creds.txt')}
vm_filter = #VDI-*

[SHUTDOWN]
poll_interval = 30
max_wait = 300

[HORIZON]
domain = CORP
ssl_verify = true
""")
    with open(os.path.join(temp_dir, 'creds.txt'), 'w') as f:
        f.write('MOCK_PW_CHECK_VALUE\n')
    return path
