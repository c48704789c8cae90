#!/usr/bin/python3
# -*- coding: utf-8 -*-
r'''
This script recovers the saved connection strings of SQL Server Management Studio
(and other isolated-shell database clients) from their privateregistry.bin hives.

The hives live in %LOCALAPPDATA%\Microsoft\SQL Server Management Studio\<version>\
and hold every saved connection as a hex encoded, user-scoped DPAPI blob.
Each hive is loaded into HKLM, its connection subtree is exported with reg.exe,
the blobs are decrypted with CryptUnprotectData and embedded credentials are
written to a report.

Decryption only works for the Windows account that saved the connections.
'''

import argparse
import os
import re
import shutil
import struct
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field

import psutil
from termcolor import colored

try:
    from dpapick3 import blob
except ImportError:
    sys.exit(colored("[-] Critical Error: The 'dpapick3' library is missing. "
                     "Please install it via `pip install dpapick3`", "red"))

__version__ = '1.0.0'

# ============================================================================
# CONSTANTS
# ============================================================================
HIVE_FILENAME = 'privateregistry.bin'
DEFAULT_ROOT = os.path.join(os.environ.get('LOCALAPPDATA', ''), 'Microsoft', 'SQL Server Management Studio')
DEFAULT_PROCESS = 'Ssms.exe'

# Private mount point in the live registry, only one hive may occupy it
MOUNT_KEY = 'HKLM\\_SSMSDEC_'
SUBKEY_TEMPLATE = '{mount}\\Software\\Microsoft\\SQL Server Management Studio\\{identifier}\\ConnectionStrings'

CONNECTION_PATTERN = re.compile(r'^"(?P<name>Connection\d+)"="(?P<blob>[^"]*)"\s*$')
HEX_PATTERN = re.compile(r'[0-9A-Fa-f]*')

DPAPI_PREFIX = b'\x01\x00\x00\x00'

CONNECTIONS_REPORT = 'connection_strings.txt'
CREDENTIALS_REPORT = 'credentials.txt'

FAILURE_MARKER = '*** DECRYPTION FAILED ***'
NOT_SET = '<not set>'
SEPARATOR = '*' * 50

# Connection string keywords, compared case-insensitively
PERSIST_SECURITY_KEY = 'persist security info'
DATA_SOURCE_KEYS = ('data source', 'server', 'address', 'addr', 'network address')
USER_KEYS = ('user id', 'uid', 'user')
PASSWORD_KEYS = ('password', 'pwd')
TRUE_VALUES = ('true', 'yes')


# ============================================================================
# ERRORS
# ============================================================================
class Error(Exception):
    pass


class StructuralError(Error):
    """The configuration root cannot be used at all."""


class HiveNotFoundError(StructuralError):
    pass


class MountLifecycleError(Error):
    """The shared mount point is in an unknown state, the run cannot continue."""


class MountError(MountLifecycleError):
    pass


class UnmountError(MountLifecycleError):
    pass


class ExportError(Error):
    pass


class MalformedEncodingError(Error):
    pass


class DecryptionError(Error):
    pass


# ============================================================================
# RECORDS
# ============================================================================
@dataclass(frozen=True)
class HiveRecord:
    path: str
    identifier: str


@dataclass(frozen=True)
class ExportedEntry:
    name: str
    hex_blob: str


@dataclass(frozen=True)
class ConnectionRecord:
    name: str
    plaintext: str = None

    @property
    def decrypted(self):
        return self.plaintext is not None

    @property
    def line(self):
        if self.plaintext is None:
            return f'{self.name}: {FAILURE_MARKER}'
        return self.plaintext


@dataclass(frozen=True)
class CredentialRecord:
    name: str
    data_source: str = None
    user_id: str = None
    password: str = None

    def lines(self):
        return [
            self.data_source if self.data_source is not None else NOT_SET,
            self.user_id if self.user_id is not None else f'User ID={NOT_SET}',
            self.password if self.password is not None else f'Password={NOT_SET}',
        ]


@dataclass
class HiveTotals:
    identifier: str
    entries: int = 0
    connections: int = 0
    failed: int = 0
    credentials: int = 0


@dataclass(frozen=True)
class ToolResult:
    returncode: int
    stdout: str = ''
    stderr: str = ''

    @property
    def ok(self):
        return self.returncode == 0

    @property
    def error(self):
        return (self.stderr or self.stdout or '').strip() or f'exit code {self.returncode}'


# ============================================================================
# HIVE LOCATOR
# ============================================================================
def locate_hives(root, hive_name=HIVE_FILENAME):
    """Return a HiveRecord for every immediate subdirectory of root holding a hive."""
    if not os.path.isdir(root):
        raise HiveNotFoundError(f'Configuration root not found: {root}')

    hives = []
    for entry in sorted(os.listdir(root)):
        hive_path = os.path.join(root, entry, hive_name)
        if os.path.isfile(hive_path):
            hives.append(HiveRecord(hive_path, entry))

    if not hives:
        raise HiveNotFoundError(f'No {hive_name} found below {root}')
    return hives


def backup_hive(hive, verbose=False):
    """Copy the hive next to itself before it gets loaded."""
    backup_path = hive.path + '.bak'
    shutil.copy2(hive.path, backup_path)
    if verbose:
        print(f'    [+] Backup written to {backup_path}')
    return backup_path


# ============================================================================
# HIVE EXPORTER
# ============================================================================
class RegHiveTool:
    """Mount, export and unmount hives through reg.exe."""

    def __init__(self, executable='reg'):
        self.executable = executable

    def _run(self, *args):
        proc = subprocess.run([self.executable, *args], capture_output=True, text=True, shell=False)
        return ToolResult(proc.returncode, proc.stdout, proc.stderr)

    def query(self, key):
        return self._run('query', key)

    def load(self, key, hive_path):
        return self._run('load', key, hive_path)

    def export(self, key, dump_path):
        return self._run('export', key, dump_path, '/y')

    def unload(self, key):
        return self._run('unload', key)


class HiveExporter:
    """
    Runs the Idle -> Mounted -> Exported -> Unmounted lifecycle for one hive at a time.
    """
    IDLE, MOUNTED, EXPORTED, UNMOUNTED = 'idle', 'mounted', 'exported', 'unmounted'

    _lock = threading.Lock()

    def __init__(self, tool, mount_key=MOUNT_KEY, subkey_template=SUBKEY_TEMPLATE, verbose=False):
        self.tool = tool
        self.mount_key = mount_key
        self.subkey_template = subkey_template
        self.verbose = verbose
        self.state = self.IDLE

    def subkey(self, hive):
        return self.subkey_template.format(mount=self.mount_key, identifier=hive.identifier)

    def release_stale_mount(self):
        """Unload whatever a previous, aborted run left at the mount point."""
        if not self.tool.query(self.mount_key).ok:
            return
        print(colored(f'[!] Stale hive found at {self.mount_key}, unloading it', 'yellow'))
        result = self.tool.unload(self.mount_key)
        if not result.ok:
            raise UnmountError(f'Unable to unload stale hive at {self.mount_key}: {result.error}')
        self.state = self.UNMOUNTED

    def _unmount(self):
        result = self.tool.unload(self.mount_key)
        if not result.ok:
            raise UnmountError(f'Unable to unload {self.mount_key}: {result.error}')
        self.state = self.UNMOUNTED
        if self.verbose:
            print(f'    [+] Unloaded {self.mount_key}')

    def export(self, hive, dump_path):
        """
        Export the connection subtree of hive to dump_path.

        MountError and UnmountError leave the mount point in an unknown state.
        ExportError only concerns this hive, which is unloaded before it is raised.
        """
        subkey = self.subkey(hive)
        with self._lock:
            if self.state not in (self.IDLE, self.UNMOUNTED):
                raise MountError(f'{self.mount_key} is still {self.state}, refusing to load {hive.path}')
            self.release_stale_mount()

            result = self.tool.load(self.mount_key, hive.path)
            if not result.ok:
                raise MountError(f'Unable to load {hive.path} at {self.mount_key}: {result.error}')
            self.state = self.MOUNTED
            if self.verbose:
                print(f'    [+] Loaded {hive.path} at {self.mount_key}')

            try:
                result = self.tool.export(subkey, dump_path)
                if result.ok:
                    self.state = self.EXPORTED
            finally:
                self._unmount()

        if not result.ok:
            raise ExportError(f'Unable to export {subkey}: {result.error}')
        return dump_path


# ============================================================================
# EXPORT PARSER
# ============================================================================
def parse_export(dump_path):
    """Extract the (name, hex blob) pairs of all connection records from a reg.exe dump."""
    try:
        with open(dump_path, 'r', encoding='utf-16') as f:
            lines = f.read().splitlines()
    except (OSError, UnicodeError) as e:
        raise ExportError(f'Unable to read {dump_path}: {e}') from e

    entries = []
    for line in lines:
        match = CONNECTION_PATTERN.match(line.strip())
        if not match:
            continue
        name, hex_blob = match.group('name'), match.group('blob')
        if not hex_blob.strip():
            print(colored(f'[!] {name} has an empty payload, skipping', 'yellow'))
            continue
        entries.append(ExportedEntry(name, hex_blob.strip()))
    return entries


# ============================================================================
# DECODING & DECRYPTION
# ============================================================================
def decode_blob(hex_string):
    if len(hex_string) % 2:
        raise MalformedEncodingError(f'Odd length hex string ({len(hex_string)} characters)')
    if not HEX_PATTERN.fullmatch(hex_string):
        raise MalformedEncodingError('Hex string contains non-hex characters')
    return bytes.fromhex(hex_string)


def masterkey_guid(data, verbose=False):
    """Return the GUID of the masterkey protecting a DPAPI blob, None for anything else."""
    if not data.startswith(DPAPI_PREFIX):
        return None
    try:
        return blob.DPAPIBlob(data).mkguid
    except (struct.error, ValueError, IndexError) as e:
        if verbose:
            print(colored(f'    [-] Unable to parse DPAPI blob header: {e}', 'red'))
        return None


class DpapiDecryptor:
    """Decrypts blobs with CryptUnprotectData under the current user's context."""

    def __init__(self):
        import pywintypes
        import win32crypt
        self._unprotect = win32crypt.CryptUnprotectData
        self._win_error = pywintypes.error

    def decrypt(self, data):
        try:
            return self._unprotect(data, None, None, None, 0)[1]
        except self._win_error as e:
            raise DecryptionError(str(e)) from e


def decrypt_entry(entry, decryptor, session=None, verbose=False):
    """Turn one exported entry into a ConnectionRecord, failed or not."""
    try:
        data = decode_blob(entry.hex_blob)
    except MalformedEncodingError as e:
        print(colored(f'[-] {entry.name}: {e}', 'red'))
        return ConnectionRecord(entry.name)

    guid = masterkey_guid(data, verbose)
    if guid and session is not None:
        session.add_masterkey(guid)

    try:
        plaintext = decryptor.decrypt(data)
        text = plaintext.decode('utf-16-le').rstrip('\x00')
    except DecryptionError as e:
        print(colored(f'[-] {entry.name}: decryption failed: {e}', 'red'))
        if guid:
            print(colored(f'    [!] Blob is protected by UserMasterkey {guid}', 'yellow'))
        return ConnectionRecord(entry.name)
    except UnicodeDecodeError:
        print(colored(f'[-] {entry.name}: decrypted data is not UTF-16LE text', 'red'))
        return ConnectionRecord(entry.name)

    if verbose:
        print(f'    [+] Decrypted {entry.name}')
    return ConnectionRecord(entry.name, text)


# ============================================================================
# CREDENTIAL EXTRACTION
# ============================================================================
def split_connection_string(text):
    """
    Split a connection string into (key, value, segment) tuples.
    Values wrapped in single or double quotes may contain semicolons, a doubled
    quote inside them stands for the quote itself.
    """
    segments = []
    segment, quote, i = '', None, 0
    while i < len(text):
        char = text[i]
        if quote:
            segment += char
            if char == quote:
                if text[i + 1:i + 2] == quote:
                    segment += quote
                    i += 1
                else:
                    quote = None
        elif char == ';':
            segments.append(segment)
            segment = ''
        else:
            if char in '"\'' and segment.rstrip().endswith('='):
                quote = char
            segment += char
        i += 1
    segments.append(segment)

    pairs = []
    for segment in segments:
        segment = segment.strip()
        if '=' not in segment:
            continue
        key, value = segment.split('=', 1)
        value = value.strip()
        if len(value) >= 2 and value[0] in '"\'' and value[-1] == value[0]:
            value = value[1:-1].replace(value[0] * 2, value[0])
        pairs.append((key.strip().lower(), value, segment))
    return pairs


def _first(pairs, keys):
    for key, value, segment in pairs:
        if key in keys:
            return value, segment
    return None, None


def extract_credentials(name, text):
    """Return a CredentialRecord when text persists its security info, else None."""
    pairs = split_connection_string(text)
    persisted, _ = _first(pairs, (PERSIST_SECURITY_KEY,))
    if persisted is None or persisted.lower() not in TRUE_VALUES:
        return None

    data_source, _ = _first(pairs, DATA_SOURCE_KEYS)
    _, user_id = _first(pairs, USER_KEYS)
    _, password = _first(pairs, PASSWORD_KEYS)

    for value, label in ((data_source, 'data source'), (user_id, 'user id'), (password, 'password')):
        if value is None:
            print(colored(f'[!] {name}: persisted credential without {label}', 'yellow'))

    return CredentialRecord(name, data_source, user_id, password)


# ============================================================================
# AGGREGATION & REPORTING
# ============================================================================
@dataclass
class Session:
    connection_lines: list = field(default_factory=list)
    credential_lines: list = field(default_factory=list)
    connections: list = field(default_factory=list)
    credentials: list = field(default_factory=list)
    hives: list = field(default_factory=list)
    masterkeys: list = field(default_factory=list)

    @property
    def current(self):
        return self.hives[-1]

    def begin_hive(self, hive):
        header = [SEPARATOR, f'Hive: {hive.identifier}', f'Path: {hive.path}', SEPARATOR]
        self.connection_lines.extend(header)
        self.credential_lines.extend(header)
        self.hives.append(HiveTotals(hive.identifier))

    def add_connection(self, record):
        self.connections.append(record)
        self.connection_lines.append(record.line)
        self.current.entries += 1
        if record.decrypted:
            self.current.connections += 1
        else:
            self.current.failed += 1

    def add_credential(self, record):
        self.credentials.append(record)
        self.credential_lines.extend(record.lines())
        self.credential_lines.append('')
        self.current.credentials += 1

    def add_masterkey(self, guid):
        if guid not in self.masterkeys:
            self.masterkeys.append(guid)

    @property
    def total_connections(self):
        return sum(h.connections for h in self.hives)

    @property
    def total_failed(self):
        return sum(h.failed for h in self.hives)

    @property
    def total_credentials(self):
        return sum(h.credentials for h in self.hives)

    def write_reports(self, output_dir):
        os.makedirs(output_dir, exist_ok=True)
        paths = []
        for filename, lines in ((CONNECTIONS_REPORT, self.connection_lines),
                                (CREDENTIALS_REPORT, self.credential_lines)):
            path = os.path.join(output_dir, filename)
            with open(path, 'w', encoding='utf-8', newline='\n') as f:
                f.write('\n'.join(lines))
                if lines:
                    f.write('\n')
            paths.append(path)
        return paths


# ============================================================================
# PIPELINE
# ============================================================================
def process_hive(hive, exporter, decryptor, session, dump_dir, keep_dumps=False, verbose=False):
    """Export, decrypt and aggregate one hive. Returns its HiveTotals or None when skipped."""
    print(colored(f'\n[INFO] Processing hive {hive.identifier}', 'yellow'))

    dump_path = os.path.join(dump_dir, f'{hive.identifier}.reg')
    try:
        exporter.export(hive, dump_path)
        entries = parse_export(dump_path)
    except ExportError as e:
        print(colored(f'[-] {e}, skipping hive {hive.identifier}', 'red'))
        return None
    finally:
        if not keep_dumps and os.path.exists(dump_path):
            os.remove(dump_path)

    session.begin_hive(hive)
    if not entries:
        print(f'    [-] No saved connections in {hive.identifier}')
        return session.current

    print(f'    [+] Found {len(entries)} saved connection(s)')
    for entry in entries:
        record = decrypt_entry(entry, decryptor, session, verbose)
        session.add_connection(record)
        if not record.decrypted:
            continue
        credential = extract_credentials(record.name, record.plaintext)
        if credential:
            session.add_credential(credential)

    totals = session.current
    print(f'    [+] Decrypted {totals.connections}/{totals.entries} connection(s), '
          f'{totals.credentials} credential(s)')
    return totals


def run(root, tool, decryptor, output_dir, dump_dir=None, keep_dumps=False, backup=False,
        hive_name=HIVE_FILENAME, verbose=False):
    """Process every hive below root and write both reports. Returns the Session."""
    hives = locate_hives(root, hive_name)
    print(colored(f'[INFO] Found {len(hives)} hive(s) below {root}', 'yellow'))

    dump_dir = dump_dir or output_dir
    os.makedirs(dump_dir, exist_ok=True)

    exporter = HiveExporter(tool, verbose=verbose)
    session = Session()

    for hive in hives:
        if backup:
            backup_hive(hive, verbose)
        process_hive(hive, exporter, decryptor, session, dump_dir, keep_dumps, verbose)

    for path in session.write_reports(output_dir):
        print(colored(f'[INFO] Exported to: {path}', 'green'))

    print(colored(f'\n[INFO] Decrypted {session.total_connections} connection(s), '
                  f'{session.total_failed} failed, {session.total_credentials} credential(s)', 'yellow'))
    if session.masterkeys and verbose:
        print('[INFO] UserMasterkeys referenced:')
        for guid in session.masterkeys:
            print(f'    {guid}')
    return session


# ============================================================================
# VALIDATION & SETUP
# ============================================================================
def is_admin():
    try:
        import ctypes
        return ctypes.windll.shell32.IsUserAnAdmin() != 0
    except (AttributeError, OSError):
        return False


def is_process_running(name):
    name = name.lower()
    for process in psutil.process_iter(['name']):
        try:
            if (process.info['name'] or '').lower() == name:
                return True
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return False


def wait_for_process_exit(name, interval=2.0):
    """Block until no process called name is running."""
    if not is_process_running(name):
        return
    print(colored(f'[!] {name} is running, close it to continue...', 'yellow'))
    while is_process_running(name):
        time.sleep(interval)
    print(colored(f'[+] {name} closed', 'green'))


def confirm(prompt='Continue?'):
    answer = input(f'{prompt} [y/N] ')
    return answer.strip().lower() in ('y', 'yes')


def setup_argument_parser():
    """Create and configure argument parser."""
    parser = argparse.ArgumentParser(description='Decrypt SQL Server Management Studio saved connections')

    parser.add_argument('-r', '--root', metavar='', default=DEFAULT_ROOT,
                        help='Folder holding the <version>\\privateregistry.bin hives')
    parser.add_argument('-o', '--output', metavar='', default='.',
                        help='Folder for the reports')
    parser.add_argument('-d', '--dumpdir', metavar='',
                        help='Folder for the intermediate .reg dumps (default: output folder)')
    parser.add_argument('-k', '--keep-dumps', action='store_true',
                        help='Keep the intermediate .reg dumps')
    parser.add_argument('-b', '--backup', action='store_true',
                        help='Copy every hive to <hive>.bak before loading it')

    parser.add_argument('-p', '--process', metavar='', default=DEFAULT_PROCESS,
                        help='Client process that must not be running')
    parser.add_argument('--no-wait', action='store_true',
                        help='Do not wait for the client process to exit')
    parser.add_argument('-y', '--yes', action='store_true',
                        help='Do not ask for confirmation')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Enable verbose output with detailed information')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    return parser


# ============================================================================
# MAIN PROGRAM FLOW
# ============================================================================
def main(argv=None):
    """Main program execution flow."""
    args = setup_argument_parser().parse_args(argv)

    if os.name != 'nt':
        sys.exit(colored('[-] This script only runs on Windows', 'red'))
    if not is_admin():
        sys.exit(colored('[-] Administrator privileges required to load hives', 'red'))

    if not args.yes:
        print(colored(f'[INFO] Every hive below {args.root} will be loaded at {MOUNT_KEY}', 'yellow'))
        if not confirm():
            sys.exit(colored('[-] Aborted', 'red'))

    if not args.no_wait:
        wait_for_process_exit(args.process)

    try:
        run(args.root, RegHiveTool(), DpapiDecryptor(), args.output, args.dumpdir,
            args.keep_dumps, args.backup, verbose=args.verbose)
    except StructuralError as e:
        sys.exit(colored(f'[-] Error: {e}', 'red'))
    except MountLifecycleError as e:
        sys.exit(colored(f'[-] Error: {e}. Check {MOUNT_KEY} before running again', 'red'))


if __name__ == '__main__':
    main()
