# vdifunctions.py - VDI Power Core Functions Library
# Version 1.0 - October 2026
# Author - VDI Operations Team
# Configuration, credentials, operator output and persisted run state

import os
import re
import datetime
import logging
from configparser import ConfigParser

# Default logging level is WARNING (other levels are DEBUG, INFO, ERROR and CRITICAL)
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

#==============================================================================
# STATIC VARIABLES
#==============================================================================

configini = '/etc/vdipower/config.ini'

# Defaults used when config.ini does not override them
default_logfile = 'vdipower.log'
default_running_vms = 'running_vms.txt'
default_creds = 'creds.txt'
default_vm_filter = '*'
default_poll_interval = 60    # seconds between drain polls
default_max_wait = 1800       # 30 minutes max wait for guest shutdowns
default_vsphere_user = 'administrator@vsphere.local'
default_vsphere_port = 443
default_horizon_user = 'administrator'

password_env = 'VDIPOWER_PASSWORD'

# Log file name (set during init)
logfile = default_logfile

# Config parser
config = ConfigParser()

# Password cache - populated by get_password()
_password = None

# Console output flag
console_output = True

_newlines = re.compile(r'[\r\n]+')

#==============================================================================
# INITIALIZATION
#==============================================================================

def init(config_file=None):
    """
    Initialize the vdifunctions module

    Reads config.ini (a missing file is not an error, defaults apply)
    and resolves the log file location.

    :param config_file: Optional path to config.ini
    :return: List of config files actually read
    """
    global configini, logfile, _password

    if config_file:
        configini = config_file

    config.clear()
    _password = None
    read_files = config.read(configini)

    logfile = get_config_value('VDIPOWER', 'logfile', default_logfile)

    if read_files:
        logger.debug(f'Loaded configuration from {configini}')
    else:
        logger.debug(f'No configuration at {configini}, using defaults')
    return read_files

#==============================================================================
# CONFIG HELPER FUNCTIONS
#==============================================================================

def get_config_value(section: str, option: str, fallback: str = '') -> str:
    """
    Get a config option value, returning fallback if commented out.

    If the value itself starts with '#' or ';', it's treated as if
    the option doesn't exist (returns fallback).

    :param section: Config section name
    :param option: Config option name
    :param fallback: Default value if option doesn't exist or is commented
    :return: Config value or fallback
    """
    if not config.has_option(section, option):
        return fallback

    value = config.get(section, option).strip()

    # If the value itself starts with a comment character, treat as not set
    if not value or value.startswith('#') or value.startswith(';'):
        return fallback

    return value


def get_config_int(section: str, option: str, fallback: int) -> int:
    """Get a config option as an integer (fallback if unset)"""
    value = get_config_value(section, option)
    if not value:
        return fallback
    return int(value)


def get_config_bool(section: str, option: str, fallback: bool = False) -> bool:
    """Get a config option as a boolean (fallback if unset)"""
    value = get_config_value(section, option)
    if not value:
        return fallback
    return value.lower() in ('1', 'yes', 'true', 'on')

#==============================================================================
# PASSWORD FUNCTIONS
#==============================================================================

def get_password() -> str:
    """
    Get the service password.

    The VDIPOWER_PASSWORD environment variable wins; otherwise the
    password is read from the creds file named in config.ini and
    cached in _password after first read.

    :return: Password string, or empty string if not found
    """
    global _password
    env_password = os.environ.get(password_env)
    if env_password:
        return env_password

    if _password is None:
        creds = get_config_value('VDIPOWER', 'creds', default_creds)
        if os.path.isfile(creds):
            with open(creds, 'r') as f:
                _password = f.read().strip()
    return _password if _password else ''

#==============================================================================
# OUTPUT AND LOGGING
#==============================================================================

def flatten(msg) -> str:
    """Collapse embedded line breaks so a message is always one log line"""
    return _newlines.sub(' ', str(msg)).strip()


def write_output(msg, **kwargs):
    """
    Write output to the log file and optionally to console

    :param msg: Message to write (line breaks are flattened)
    :param kwargs:
        logfile - specific logfile path
        console - override console output setting (True/False)
    """
    timestamp = datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    formatted_msg = f'[{timestamp}] {flatten(msg)}'

    lfile = kwargs.get('logfile', logfile)
    print_to_console = kwargs.get('console', console_output)

    if lfile:
        try:
            with open(lfile, 'a') as f:
                f.write(formatted_msg + '\n')
        except OSError as e:
            print(f'Error writing to {lfile}: {e}')

    if print_to_console:
        print(formatted_msg)

#==============================================================================
# HOST LIST
#==============================================================================

def read_host_list(path: str) -> list:
    """
    Read the newline-delimited host list.

    Blank lines and lines starting with '#' or ';' are skipped.

    :param path: Host list file
    :return: List of host identifiers in file order
    :raises FileNotFoundError: if the file does not exist
    """
    hosts = []
    with open(path, 'r') as f:
        for line in f:
            stripped = line.strip()
            if not stripped:
                continue
            if stripped.startswith('#') or stripped.startswith(';'):
                continue
            hosts.append(stripped)
    return hosts

#==============================================================================
# RUNNING VM LIST
#==============================================================================

def init_running_list(path: str):
    """Truncate (or create) the running VM list at the start of a shutdown run"""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, 'w'):
        pass


def append_running_vm(path: str, name: str):
    """Record a VM that was powered on when the shutdown run found it"""
    with open(path, 'a') as f:
        f.write(name + '\n')


def read_running_list(path: str) -> list:
    """
    Read the VM names recorded by the last shutdown run.

    :param path: Running VM list file
    :return: Names in file order (empty list if the file is missing)
    """
    if not os.path.isfile(path):
        return []
    with open(path, 'r') as f:
        return [line.strip() for line in f if line.strip()]
