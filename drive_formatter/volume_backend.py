import psutil
import os
import ctypes
import subprocess
import sys
from collections import namedtuple


# GetDriveTypeW return codes.
DRIVE_KINDS = {
    0: "Unknown",
    1: "Unknown",  # DRIVE_NO_ROOT_DIR
    2: "Removable",
    3: "Fixed",
    4: "Network",
    5: "CDRom",
    6: "Ram",
}
KIND_REMOVABLE = "Removable"
KIND_CDROM = "CDRom"

SUPPORTED_FILESYSTEMS = ("FAT32", "NTFS", "exFAT")
DEFAULT_FILESYSTEM = "NTFS"
# Longest volume label each filesystem accepts.
LABEL_LIMITS = {"FAT32": 11, "exFAT": 11, "NTFS": 32}

FORMAT_EXECUTABLE = "format.com"
PROBE_DIR_NAME = "temp_mount"
# format.com writes its console output in the OEM code page.
FORMAT_OUTPUT_ENCODING = "oem" if os.name == "nt" else "utf-8"


class FormatError(Exception):
    """Raised when a drive cannot be formatted."""


class DriveNotReadyError(FormatError):
    pass


class FormatFailedError(FormatError):
    """The format process ran but returned a non-zero exit code."""

    def __init__(self, exit_code):
        super().__init__(f"Formatting failed with error code {exit_code}")
        self.exit_code = exit_code


class Volume(namedtuple("Volume", "letter kind total_size free_space filesystem label is_ready")):
    """Snapshot of one drive as reported by the OS. Re-read it, never modify it."""
    __slots__ = ()

    @property
    def root(self):
        return drive_root(self.letter)


FormatRequest = namedtuple("FormatRequest", "letter filesystem label quick")


def drive_root(letter):
    """Returns the root path for a drive letter, e.g. 'D' -> 'D:\\'."""
    return f"{letter.upper()}:\\"


def get_drive_type(letter):
    """Returns the drive kind name for the given letter using GetDriveTypeW."""
    code = ctypes.windll.kernel32.GetDriveTypeW(ctypes.c_wchar_p(drive_root(letter)))
    return DRIVE_KINDS.get(code, "Unknown")


def get_volume_info(letter):
    """
    Returns (label, filesystem) for the drive, or None when the volume is not ready
    (no media inserted, unformatted, or locked).
    """
    label_buf = ctypes.create_unicode_buffer(261)
    fs_buf = ctypes.create_unicode_buffer(261)
    serial = ctypes.c_ulong()
    max_component = ctypes.c_ulong()
    flags = ctypes.c_ulong()
    ok = ctypes.windll.kernel32.GetVolumeInformationW(
        ctypes.c_wchar_p(drive_root(letter)),
        label_buf, len(label_buf),
        ctypes.byref(serial),
        ctypes.byref(max_component),
        ctypes.byref(flags),
        fs_buf, len(fs_buf),
    )
    if not ok:
        return None
    return label_buf.value, fs_buf.value


def is_admin():
    try:
        return bool(ctypes.windll.shell32.IsUserAnAdmin())
    except (AttributeError, OSError):
        return False


def relaunch_as_admin(argv):
    """
    Starts this program again through the UAC 'runas' verb.
    Returns True when the elevated copy was launched; the caller should then exit.
    """
    script = os.path.abspath(sys.argv[0])
    params = subprocess.list2cmdline(list(argv))
    if script.lower().endswith(".py"):
        executable, params = sys.executable, f'"{script}" {params}'
    else:
        executable = script
    print("  Info: Administrator rights are required. Requesting elevation...")
    try:
        ret = ctypes.windll.shell32.ShellExecuteW(None, "runas", executable, params, None, 1)
    except (AttributeError, OSError) as e:
        print(f"  Error: Could not request elevation. {type(e).__name__}: {e}")
        return False
    # ShellExecuteW reports success with any value above 32.
    if ret <= 32:
        print(f"  Error: Elevation was denied or failed (code {ret}).")
        return False
    return True


def build_format_command(request, force_dismount=False):
    """Builds the argv for the native format utility from a FormatRequest."""
    cmd = [FORMAT_EXECUTABLE, f"{request.letter.upper()}:", f"/FS:{request.filesystem}"]
    if request.quick:
        cmd.append("/Q")
    if request.label:
        cmd.append(f"/V:{request.label}")
    if force_dismount:
        cmd.append("/X")
    return cmd


def _hidden_window_options():
    if os.name != "nt":
        return {}
    startupinfo = subprocess.STARTUPINFO()
    startupinfo.dwFlags |= subprocess.STARTF_USESHOWWINDOW
    startupinfo.wShowWindow = subprocess.SW_HIDE
    return {"startupinfo": startupinfo, "creationflags": subprocess.CREATE_NO_WINDOW}


class WindowsVolumeBackend:
    """
    The only place that talks to the operating system: drive enumeration,
    the force-mount probe and the format process itself.
    """

    def __init__(self, force_dismount=False):
        self.force_dismount = force_dismount

    def _drive_letters(self):
        letters = set()
        for partition in psutil.disk_partitions(all=True):
            mountpoint = partition.mountpoint or partition.device
            if mountpoint and mountpoint[0].isalpha():
                letters.add(mountpoint[0].upper())
        return sorted(letters)

    def read_volume(self, letter):
        """Reads a fresh Volume snapshot for one drive letter."""
        letter = letter.upper()
        kind = get_drive_type(letter)
        info = get_volume_info(letter)
        if info is None:
            return Volume(letter, kind, None, None, "", "", False)

        label, filesystem = info
        try:
            usage = psutil.disk_usage(drive_root(letter))
        except OSError:
            return Volume(letter, kind, None, None, "", "", False)
        return Volume(letter, kind, usage.total, usage.free, filesystem, label, True)

    def list_volumes(self):
        return [self.read_volume(letter) for letter in self._drive_letters()]

    def get_volume(self, letter):
        """Returns the Volume for a letter, or None when no such drive is mounted."""
        letter = letter.upper()
        if letter not in self._drive_letters():
            return None
        return self.read_volume(letter)

    def force_mount_probe(self, letter):
        """
        Creates and removes a scratch directory at the drive root to make Windows
        mount removable media. Never raises; returns False when the probe failed.
        """
        probe_path = os.path.join(drive_root(letter), PROBE_DIR_NAME)
        try:
            os.mkdir(probe_path)
            os.rmdir(probe_path)
        except OSError as e:
            print(f"  Warning: Force-mount probe on {drive_root(letter)} failed. {type(e).__name__}: {e}")
            return False
        print(f"  Info: Force-mount probe on {drive_root(letter)} succeeded.")
        return True

    def execute_format(self, request):
        """Runs the native format utility for the request and returns its exit code."""
        cmd = build_format_command(request, self.force_dismount)
        print(f"  Info: Running: {subprocess.list2cmdline(cmd)}")
        # format.com asks "Proceed with Format (Y/N)?" on stdin.
        # Output stays bytes so an undecodable character can never mask the exit code.
        proc = subprocess.run(cmd, input=b"Y\n", capture_output=True, check=False,
                              **_hidden_window_options())
        if proc.returncode != 0:
            output = (proc.stdout or b"") + (proc.stderr or b"")
            output = output.decode(FORMAT_OUTPUT_ENCODING, errors="replace")
            tail = output.strip().splitlines()[-5:]
            for line in tail:
                print(f"  format: {line}")
        return proc.returncode
