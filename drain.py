# drain.py - VDI Power Shutdown Drain Loop
# Version 1.0 - October 2026
# Author - VDI Operations Team
# Waits for guest-initiated shutdowns and forces off whatever is left

"""
Shutdown Drain Module

After a shutdown pass, every VM that was asked to shut down through
VMware Tools sits in the tracked set. This module polls that set at a
fixed interval, dropping each VM the moment it is seen off, until the set
is empty or the maximum wait has elapsed. Anything still running at that
point is powered off hard.

The clock and sleep functions are parameters so the loop can be driven
by a fake clock.
"""

import time
import logging
from dataclasses import dataclass, field

from vsphere import PowerState
import vdifunctions as vdf

logger = logging.getLogger(__name__)


@dataclass
class DrainResult:
    """Outcome of one drain"""
    ticks: int = 0
    elapsed: float = 0.0
    converged: list = field(default_factory=list)
    forced: list = field(default_factory=list)
    failed: list = field(default_factory=list)

    @property
    def timed_out(self) -> bool:
        return bool(self.forced or self.failed)


def _still_on(get_power_state, handle) -> bool:
    return get_power_state(handle) == PowerState.POWERED_ON


def drain_shutdowns(tracked: dict, get_power_state, force_off,
                    max_wait: float, poll_interval: float,
                    clock=time.monotonic, sleep=time.sleep,
                    output=vdf.write_output) -> DrainResult:
    """
    Wait for tracked VMs to power off, then force off the stragglers.

    :param tracked: Ordered mapping of (location, name) -> VM handle; emptied on return
    :param get_power_state: Callable(handle) -> PowerState
    :param force_off: Callable(handle), hard power off
    :param max_wait: Maximum seconds to wait for guests
    :param poll_interval: Seconds between polls
    :param clock: Monotonic clock returning seconds
    :param sleep: Sleep function taking seconds
    :param output: Operator message writer
    :return: DrainResult
    """
    result = DrainResult()
    if not tracked:
        return result

    output(f'Waiting up to {int(max_wait)}s for {len(tracked)} VM(s) to shut down')
    start = clock()

    while tracked and (clock() - start) < max_wait:
        sleep(poll_interval)
        result.ticks += 1

        for key, handle in list(tracked.items()):
            try:
                if _still_on(get_power_state, handle):
                    continue
            except Exception as e:
                output(f'{key[-1]}: Unable to check power state: {e}')
                continue
            del tracked[key]
            result.converged.append(key)
            output(f'{key[-1]}: Powered off (elapsed: {int(clock() - start)}s)')

        if tracked:
            output(f'{len(tracked)} VM(s) still running... '
                   f'(elapsed: {int(clock() - start)}s, limit: {int(max_wait)}s)')

    result.elapsed = clock() - start

    if tracked:
        output(f'Timeout after {int(result.elapsed)}s - forcing power off for {len(tracked)} VM(s)')

    for key, handle in list(tracked.items()):
        try:
            still_on = _still_on(get_power_state, handle)
        except Exception as e:
            logger.debug(f'{key}: power state re-check failed: {e}')
            still_on = True

        if not still_on:
            result.converged.append(key)
            output(f'{key[-1]}: Powered off before force - skipping')
            continue

        try:
            force_off(handle)
            result.forced.append(key)
            output(f'{key[-1]}: Powered off (forced)')
        except Exception as e:
            result.failed.append(key)
            output(f'{key[-1]}: Force power off failed: {e}')

    tracked.clear()
    return result
