import os
import argparse
import sys # For sys.stdout.reconfigure and sys.stderr

from volume_backend import (
    DEFAULT_FILESYSTEM,
    KIND_CDROM,
    KIND_REMOVABLE,
    LABEL_LIMITS,
    SUPPORTED_FILESYSTEMS,
    DriveNotReadyError,
    FormatError,
    FormatFailedError,
    FormatRequest,
    WindowsVolumeBackend,
    drive_root,
    is_admin,
    relaunch_as_admin,
)


__version__ = "0.1.0"

TABLE_HEADER = "Letter | Type       | Size        | Free Space  | Format | Label"
TABLE_RULE = "-------|------------|-------------|-------------|--------|-------"


class RequestAborted(Exception):
    """The user gave invalid input or declined; nothing has been touched."""


def bytes_to_gb(size_bytes):
    """Converts a byte count to a gigabyte figure rounded to two decimals."""
    return f"{size_bytes / (1024 ** 3):.2f} GB"


def print_volume_table(volumes):
    """Prints the volume table. Optical drives are left out."""
    print("Available drives:")
    print(TABLE_HEADER)
    print(TABLE_RULE)
    for volume in volumes:
        if volume.kind == KIND_CDROM:
            continue
        row = f"{volume.root:<6} | {volume.kind:<10} | "
        if volume.is_ready:
            row += (f"{bytes_to_gb(volume.total_size):<11} | {bytes_to_gb(volume.free_space):<11} | "
                    f"{volume.filesystem:<6} | {volume.label}")
        else:
            row += f"{'Not Ready':<11} | {'Not Ready':<11} | {'':<6} |"
        print(row)


def list_volumes(backend):
    """Queries the backend and prints the table. Never raises."""
    try:
        volumes = backend.list_volumes()
    except Exception as e:
        print(f"  Error: Could not enumerate drives. {type(e).__name__}: {e}")
        volumes = []
    print_volume_table(volumes)
    return volumes


def normalize_filesystem(name):
    """Returns the canonical spelling of a supported filesystem name, or None."""
    for fs in SUPPORTED_FILESYSTEMS:
        if fs.upper() == name.strip().upper():
            return fs
    return None


def system_drive_letter():
    return os.environ.get("SystemDrive", "C:")[:1].upper()


def build_format_request(backend, input_func=input):
    """
    Walks the user through the prompts and returns a FormatRequest.
    Raises RequestAborted on invalid input or when the user does not confirm.
    """
    letter = input_func("\nEnter the drive letter to format (e.g., D): ").strip().upper()
    if len(letter) != 1 or not ("A" <= letter <= "Z"):
        raise RequestAborted("Invalid drive letter.")

    volume = backend.get_volume(letter)
    if volume is None:
        raise RequestAborted(f"Drive {letter}: was not found.")
    if volume.kind == KIND_CDROM:
        raise RequestAborted(f"Drive {letter}: is an optical drive and cannot be formatted.")
    if letter == system_drive_letter():
        raise RequestAborted(f"Drive {letter}: holds the running Windows installation and will not be formatted.")

    confirm = input_func(f"\nWARNING: All data on drive {letter}: will be lost! Continue? (Y/N): ")
    if confirm.strip().upper() != "Y":
        raise RequestAborted("Operation cancelled.")

    print(f"\nAvailable file systems: {', '.join(SUPPORTED_FILESYSTEMS)}")
    fs_answer = input_func(f"Enter file system (default {DEFAULT_FILESYSTEM}): ")
    filesystem = normalize_filesystem(fs_answer) if fs_answer.strip() else DEFAULT_FILESYSTEM
    if filesystem is None:
        raise RequestAborted(f"Unsupported file system '{fs_answer.strip()}'. "
                             f"Choose one of: {', '.join(SUPPORTED_FILESYSTEMS)}.")

    label = input_func("Enter volume label (optional, press Enter to skip): ").strip()
    if len(label) > LABEL_LIMITS[filesystem]:
        raise RequestAborted(f"Volume label is too long for {filesystem} "
                             f"(max {LABEL_LIMITS[filesystem]} characters).")

    quick_answer = input_func("Enable quick format? (Y/N, default Y): ")
    quick = not quick_answer.strip().upper().startswith("N")

    return FormatRequest(letter, filesystem, label or None, quick)


def ensure_ready(backend, volume):
    """
    Tries to bring a not-ready removable drive online before formatting.
    Returns the re-read Volume; raises DriveNotReadyError if it stays offline.
    """
    if volume.is_ready or volume.kind != KIND_REMOVABLE:
        return volume

    print("\nRemovable drive detected but not ready. Trying to prepare...")
    backend.force_mount_probe(volume.letter)

    volume = backend.read_volume(volume.letter)
    if not volume.is_ready:
        raise DriveNotReadyError("Drive is not ready. Please check if the drive is properly "
                                 "connected and recognized by Windows.")
    return volume


def format_drive(backend, request):
    """Formats the drive described by request. Any failure surfaces as FormatError."""
    root = drive_root(request.letter)
    try:
        volume = backend.get_volume(request.letter)
        if volume is None:
            raise DriveNotReadyError(f"Drive {root} is no longer present.")
        ensure_ready(backend, volume)

        print(f"\nFormatting {root} as {request.filesystem}...")
        exit_code = backend.execute_format(request)
        if exit_code != 0:
            raise FormatFailedError(exit_code)
    except Exception as e:
        raise FormatError(f"Cannot format drive {root}. Error: {e}") from e

    print(f"\nDrive {root} formatted successfully!")


def run_interactive(backend, input_func=input):
    """Lists drives, collects a request and formats. Returns True if a drive was formatted."""
    print("Windows Drive Formatter")
    print("=======================\n")
    list_volumes(backend)

    try:
        request = build_format_request(backend, input_func)
    except RequestAborted as e:
        print(e)
        return False
    except (KeyboardInterrupt, EOFError):
        print("\nOperation cancelled by user.")
        return False

    try:
        format_drive(backend, request)
    except FormatError as e:
        print(f"Error: {e}")
        return False
    return True


def wait_for_keypress(input_func=input):
    try:
        input_func("\nPress Enter to exit...")
    except (KeyboardInterrupt, EOFError):
        pass


def build_cli():
    parser = argparse.ArgumentParser(
        description="Windows Drive Formatter: list local drives and format one with the native format command.",
        formatter_class=argparse.RawTextHelpFormatter
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument("--list", "-l", action="store_true",
                        help="Print the drive table and exit without prompting.")
    parser.add_argument("--no-elevate", action="store_true",
                        help="Do not relaunch through UAC when not running as Administrator.\n"
                             "The format command will most likely be refused.")
    parser.add_argument("--no-pause", action="store_true",
                        help="Do not wait for Enter before exiting.")
    parser.add_argument("--force-dismount", action="store_true",
                        help="Pass /X to format so the volume is dismounted first if in use.")
    return parser


def main(argv=None):
    args = build_cli().parse_args(argv)
    backend = WindowsVolumeBackend(force_dismount=args.force_dismount)

    if args.list:
        list_volumes(backend)
        return 0

    if not is_admin():
        if not args.no_elevate:
            if relaunch_as_admin(sys.argv[1:] if argv is None else argv):
                return 0
        print("  Warning: Not running as Administrator. Formatting is likely to fail.")

    exit_code = 0
    try:
        run_interactive(backend)
    except KeyboardInterrupt:
        print("\nOperation cancelled by user.")
    except Exception as e:
        print(f"\nError: An unexpected critical error occurred: {type(e).__name__} - {e}", file=sys.stderr)
        exit_code = 1

    if not args.no_pause:
        wait_for_keypress()
    return exit_code


def run():
    if hasattr(sys, 'stdout') and hasattr(sys.stdout, 'reconfigure'):
        try:
            sys.stdout.reconfigure(encoding='utf-8')
        except (AttributeError, ValueError, OSError):
            pass
    sys.exit(main())


if __name__ == "__main__":
    run()
