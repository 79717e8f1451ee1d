#!/usr/bin/env python3
# vdipower.py - VDI Power Shutdown/Startup Orchestration
# Version 1.0 - October 2026
# Author - VDI Operations Team
# Main script for orderly VM shutdown and startup around Horizon maintenance mode

"""
VDI Power Orchestration Script

Shuts down or starts up the virtual desktops on a list of vSphere hosts,
putting each desktop into Horizon maintenance mode before it goes down and
taking it out again after startup, so no user session lands on a machine
that is about to power off.

Shutdown:
1. Truncate the running VM list
2. For each host in the host list, for each matching VM:
   - Enter maintenance mode (failure skips the VM)
   - Skip VMs that are not powered on
   - Record the VM in the running VM list
   - VMware Tools running: guest shutdown, VM is tracked
   - Otherwise: hard power off
3. Drain: poll tracked VMs until all are off or max_wait elapses,
   then force off the rest

Startup:
1. Power on every VM in the running VM list, in order
2. For each host in the host list, exit maintenance mode for every
   matching VM

Usage:
    python3 vdipower.py shutdown hosts.txt vcsa-01a.corp.local cs-01a.corp.local
    python3 vdipower.py startup hosts.txt vcsa-01a.corp.local cs-01a.corp.local
    python3 vdipower.py --help

Exit codes:
    0 - Run completed (individual VM failures are logged, not fatal)
    1 - Help/usage displayed
    2 - Fatal error (missing host list, unknown action, setup/connect failure)
"""

import os
import sys
import argparse
import logging
import datetime
from dataclasses import dataclass, field

import vdifunctions as vdf
from drain import drain_shutdowns
from horizon import HorizonClient
from vsphere import VSphereInventory, PowerState, ToolsStatus

logger = logging.getLogger(__name__)

#==============================================================================
# SCRIPT CONFIGURATION
#==============================================================================

SCRIPT_NAME = 'vdipower'
SCRIPT_VERSION = '1.0'
SCRIPT_DESCRIPTION = 'VDI Power Shutdown/Startup Orchestration'

ACTIONS = ('shutdown', 'startup')

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_FATAL = 2

#==============================================================================
# RUN CONTEXT
#==============================================================================

@dataclass
class RunContext:
    """Everything one run needs; nothing here outlives the run"""
    inventory: object
    maintenance: object
    running_list: str
    vm_filter: str = '*'
    poll_interval: float = vdf.default_poll_interval
    max_wait: float = vdf.default_max_wait
    tracked: dict = field(default_factory=dict)
    recorded: list = field(default_factory=list)
    handled: set = field(default_factory=set)
    output: object = vdf.write_output

#==============================================================================
# SHUTDOWN
#==============================================================================

def shutdown_vm(ctx: RunContext, vm):
    """
    Put one VM into maintenance mode and start its shutdown.

    :param ctx: Run context
    :param vm: VmRecord from the selector
    """
    out = ctx.output

    try:
        ctx.maintenance.set_maintenance(vm.name, True)
        out(f'{vm.name}: Entered maintenance mode')
    except Exception as e:
        out(f'{vm.name}: Failed to enter maintenance mode, skipping: {e}')
        return

    if vm.power_state != PowerState.POWERED_ON:
        out(f'{vm.name}: Already {vm.power_state.value} - no power action')
        return

    if vm.key in ctx.handled:
        out(f'{vm.name}: Already handled in this run - skipping')
        return
    ctx.handled.add(vm.key)

    if vm.name not in ctx.recorded:
        try:
            vdf.append_running_vm(ctx.running_list, vm.name)
        except Exception as e:
            out(f'{vm.name}: Unable to record in {ctx.running_list}, skipping: {e}')
            return
        ctx.recorded.append(vm.name)

    try:
        tools_status = ctx.inventory.get_tools_status(vm)
    except Exception as e:
        out(f'{vm.name}: Unable to check Tools status, assuming not running: {e}')
        tools_status = ToolsStatus.UNKNOWN

    if tools_status == ToolsStatus.RUNNING:
        try:
            ctx.inventory.shutdown_guest(vm)
        except Exception as e:
            out(f'{vm.name}: Guest shutdown request failed: {e}')
            return
        ctx.tracked[vm.key] = vm
        out(f'{vm.name}: Initiated graceful guest shutdown')
    else:
        try:
            ctx.inventory.power_off(vm)
        except Exception as e:
            out(f'{vm.name}: Power off failed: {e}')
            return
        out(f'{vm.name}: No VMware Tools available, powered off')


def shutdown_host(ctx: RunContext, host: str):
    """
    Shut down every matching VM on one host.

    :raises: whatever the selector raises when the host cannot be resolved
    """
    vms = ctx.inventory.find_vms(host, ctx.vm_filter)
    ctx.output(f'{host}: {len(vms)} VM(s) match {ctx.vm_filter}')
    for vm in vms:
        shutdown_vm(ctx, vm)


def run_shutdown(ctx: RunContext, hosts: list):
    """
    Shutdown pass over all hosts followed by the drain.

    :param ctx: Run context
    :param hosts: Host identifiers from the host list
    :return: DrainResult
    """
    vdf.init_running_list(ctx.running_list)
    ctx.recorded.clear()
    ctx.handled.clear()
    ctx.tracked.clear()

    for host in hosts:
        try:
            shutdown_host(ctx, host)
        except Exception as e:
            ctx.output(f'{host}: Unable to process host, skipping: {e}')

    result = drain_shutdowns(
        ctx.tracked,
        ctx.inventory.get_power_state,
        ctx.inventory.power_off,
        max_wait=ctx.max_wait,
        poll_interval=ctx.poll_interval,
        output=ctx.output,
    )

    ctx.output(f'Shutdown complete: {len(ctx.recorded)} VM(s) recorded as running, '
               f'{len(result.forced)} forced off, {len(result.failed)} failed to power off')
    return result

#==============================================================================
# STARTUP
#==============================================================================

def start_vm(ctx: RunContext, name: str) -> bool:
    """
    Power on the VM(s) recorded under a name.

    :return: True if every match is on afterwards
    """
    out = ctx.output
    matches = ctx.inventory.find_vms_by_name(name)
    if not matches:
        out(f'{name}: VM not found, cannot power on')
        return False
    if len(matches) > 1:
        out(f'{name}: {len(matches)} VMs share this name, powering on all of them')

    success = True
    for vm in matches:
        if vm.power_state == PowerState.POWERED_ON:
            out(f'{name}: Already powered on - skipping')
            continue
        try:
            ctx.inventory.power_on(vm)
            out(f'{name}: Powered on')
        except Exception as e:
            out(f'{name}: Failed to power on: {e}')
            success = False
    return success


def release_host(ctx: RunContext, host: str):
    """Take every matching VM on one host out of maintenance mode"""
    vms = ctx.inventory.find_vms(host, ctx.vm_filter)
    ctx.output(f'{host}: {len(vms)} VM(s) match {ctx.vm_filter}')
    for vm in vms:
        try:
            ctx.maintenance.set_maintenance(vm.name, False)
            ctx.output(f'{vm.name}: Exited maintenance mode')
        except Exception as e:
            ctx.output(f'{vm.name}: Failed to exit maintenance mode: {e}')


def run_startup(ctx: RunContext, hosts: list):
    """
    Power on the recorded VMs, then clear maintenance mode everywhere.

    :param ctx: Run context
    :param hosts: Host identifiers from the host list
    :return: Number of VMs that failed to power on
    """
    names = vdf.read_running_list(ctx.running_list)
    ctx.output(f'{len(names)} VM(s) to power on from {ctx.running_list}')

    failures = 0
    for name in names:
        try:
            if not start_vm(ctx, name):
                failures += 1
        except Exception as e:
            ctx.output(f'{name}: Unable to power on: {e}')
            failures += 1

    for host in hosts:
        try:
            release_host(ctx, host)
        except Exception as e:
            ctx.output(f'{host}: Unable to process host, skipping: {e}')

    ctx.output(f'Startup complete: {len(names) - failures} of {len(names)} VM(s) powered on')
    return failures

#==============================================================================
# SETUP
#==============================================================================

def connect_services(vcenter: str, horizon: str):
    """
    Open the vSphere and Horizon sessions for this run.

    :return: (VSphereInventory, HorizonClient)
    :raises: any connection or login failure
    """
    password = vdf.get_password()

    inventory = VSphereInventory(
        vcenter,
        vdf.get_config_value('VSPHERE', 'user', vdf.default_vsphere_user),
        password,
        port=vdf.get_config_int('VSPHERE', 'port', vdf.default_vsphere_port),
    )
    inventory.connect()
    vdf.write_output(f'Connected to {vcenter}')

    maintenance = HorizonClient(
        horizon,
        vdf.get_config_value('HORIZON', 'user', vdf.default_horizon_user),
        password,
        domain=vdf.get_config_value('HORIZON', 'domain'),
        verify=vdf.get_config_bool('HORIZON', 'ssl_verify', False),
    )
    try:
        maintenance.connect()
    except Exception:
        inventory.disconnect()
        raise
    vdf.write_output(f'Connected to {horizon}')

    return inventory, maintenance


def fatal(msg) -> int:
    vdf.write_output(f'FATAL: {msg}')
    return EXIT_FATAL

#==============================================================================
# COMMAND LINE INTERFACE
#==============================================================================

def build_parser():
    parser = argparse.ArgumentParser(
        prog=SCRIPT_NAME,
        description=SCRIPT_DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    vdipower shutdown hosts.txt vcsa-01a.corp.local cs-01a.corp.local
    vdipower startup hosts.txt vcsa-01a.corp.local cs-01a.corp.local
    vdipower shutdown hosts.txt vcsa-01a.corp.local cs-01a.corp.local --filter 'VDI-*'

Configuration:
    [VDIPOWER]
    logfile = /var/log/vdipower.log
    running_vms = /var/lib/vdipower/running_vms.txt
    creds = /etc/vdipower/creds.txt
    vm_filter = *

    [SHUTDOWN]
    poll_interval = 60
    max_wait = 1800

    [VSPHERE]
    user = administrator@vsphere.local

    [HORIZON]
    user = administrator
    domain = CORP
"""
    )

    parser.add_argument('action', help='shutdown or startup')
    parser.add_argument('hostfile', help='File with one host/cluster/folder name per line')
    parser.add_argument('vcenter', help='vCenter or ESXi server')
    parser.add_argument('horizon', help='Horizon Connection Server')

    parser.add_argument('--config', '-c', default=None,
                        help=f'Path to config.ini (default {vdf.configini})')
    parser.add_argument('--filter', '-f', dest='vm_filter', default=None,
                        help='VM name glob (default from config, else *)')
    parser.add_argument('--version', '-v', action='version',
                        version=f'{SCRIPT_NAME} v{SCRIPT_VERSION}')
    parser.add_argument('--debug', '-d', action='store_true',
                        help='Enable debug logging')
    return parser


def main(argv=None) -> int:
    """
    Run one shutdown or startup pass.

    :param argv: Argument list (default sys.argv[1:])
    :return: Process exit code
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = build_parser()
    if not argv or argv[0] == 'help' or '-h' in argv or '--help' in argv:
        parser.print_help()
        return EXIT_USAGE

    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        # argparse exits 0 for --version and 2 for a bad command line
        return EXIT_USAGE if e.code else EXIT_OK

    if args.debug:
        logging.basicConfig(
            level=logging.DEBUG, force=True,
            format='[%(asctime)s] %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    try:
        vdf.init(args.config)
    except Exception as e:
        return fatal(f'Unable to load configuration: {e}')

    action = args.action.lower()
    if action not in ACTIONS:
        return fatal(f'Unrecognized action {args.action} (expected {" or ".join(ACTIONS)})')

    if not os.path.isfile(args.hostfile):
        return fatal(f'Host list {args.hostfile} not found')

    start_time = datetime.datetime.now()
    vdf.write_output(f'{SCRIPT_DESCRIPTION} v{SCRIPT_VERSION}: {action} started')

    try:
        hosts = vdf.read_host_list(args.hostfile)
        vm_filter = args.vm_filter or vdf.get_config_value('VDIPOWER', 'vm_filter',
                                                            vdf.default_vm_filter)
        running_list = vdf.get_config_value('VDIPOWER', 'running_vms',
                                            vdf.default_running_vms)
        poll_interval = vdf.get_config_int('SHUTDOWN', 'poll_interval',
                                           vdf.default_poll_interval)
        max_wait = vdf.get_config_int('SHUTDOWN', 'max_wait', vdf.default_max_wait)
        inventory, maintenance = connect_services(args.vcenter, args.horizon)
    except Exception as e:
        if args.debug:
            logger.exception('Setup failed')
        return fatal(f'Setup failed: {e}')

    ctx = RunContext(
        inventory=inventory,
        maintenance=maintenance,
        running_list=running_list,
        vm_filter=vm_filter,
        poll_interval=poll_interval,
        max_wait=max_wait,
    )

    try:
        if action == 'shutdown':
            run_shutdown(ctx, hosts)
        else:
            run_startup(ctx, hosts)
    except Exception as e:
        if args.debug:
            logger.exception(f'{action} failed')
        return fatal(f'{action} failed: {e}')
    finally:
        maintenance.disconnect()
        inventory.disconnect()

    elapsed = datetime.datetime.now() - start_time
    vdf.write_output(f'{action} finished, elapsed: {str(elapsed).split(".")[0]}')
    return EXIT_OK


def cli():
    """Console script entry point"""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print('\n\nInterrupted by user')
        sys.exit(130)


if __name__ == '__main__':
    cli()
