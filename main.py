import argparse
import os
import sys

from loguru import logger

import gpx
from bcfz import DecodeError


def get_parser():
    """Create and configure the CLI argument parser.

    :returns: Configured argument parser.
    :rtype: argparse.ArgumentParser
    """
    parser = argparse.ArgumentParser(
        description="Unpacker for GuitarPro 6 (.gpx) files"
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log decoding details to stderr",
    )
    subparsers = parser.add_subparsers(
        title="subcommands", dest="cmd", required=True
    )

    decompress = subparsers.add_parser(
        "decompress", aliases=["d"], help="Decompress a BCFZ file"
    )
    decompress.add_argument("input", help="BCFZ (.gpx) file to decompress")
    decompress.add_argument(
        "-o", "--output", required=True, help="Output file path"
    )
    decompress.add_argument(
        "-P",
        "--no-progress",
        action="store_true",
        help="Hide decompression progress",
    )

    extract = subparsers.add_parser(
        "extract", aliases=["x"], help="Extract the files of a .gpx container"
    )
    extract.add_argument("input", help=".gpx file to extract")
    extract.add_argument(
        "-o",
        "--output",
        default=".",
        help="Destination directory (default: current)",
    )
    extract.add_argument(
        "-P",
        "--no-progress",
        action="store_true",
        help="Hide decompression progress",
    )

    listing = subparsers.add_parser(
        "list", aliases=["l"], help="List the files of a .gpx container"
    )
    listing.add_argument("input", help=".gpx file to list")

    return parser


def _configure_logging(verbose: bool) -> None:
    """Send library logs to stderr, at DEBUG level if ``verbose``.

    :param verbose: Whether to show debug messages.
    :type verbose: bool
    :returns: None
    :rtype: None
    """
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")


def _safe_join(base: str, name: str) -> str:
    """Join a container file name to a base directory safely.

    Defense against path traversal attacks.

    :param base: Destination base directory.
    :type base: str
    :param name: File name as stored in the container.
    :type name: str
    :returns: Absolute, safe path within ``base``.
    :rtype: str
    :raises ValueError: If the joined path would escape the base directory.
    """
    base_abs = os.path.abspath(base)
    normalized = name.replace("/", os.sep).replace("\\", os.sep)
    candidate = os.path.abspath(os.path.join(base_abs, normalized))
    if (
        candidate == base_abs
        or os.path.commonpath([candidate, base_abs]) != base_abs
    ):
        raise ValueError(f"Unsafe file name in container: {name}")
    return candidate


def _print_progress(line: str) -> None:
    """Render and flush a single progress line in-place (carriage return).

    :param line: The textual progress line to display.
    :type line: str
    :returns: None
    :rtype: None
    """
    sys.stdout.write("\r" + line)
    sys.stdout.flush()


def _fmt_pct(done: int, total: int) -> str:
    """Format a completion percentage string like ``12.34%``.

    :param done: Units completed.
    :type done: int
    :param total: Total units to complete.
    :type total: int
    :returns: Percentage.
    :rtype: str
    """
    if total <= 0:
        return "0%"
    pct = 100.0 * (done / float(total))
    return f"{pct:6.2f}%"


def _fmt_bytes(n: int) -> str:
    """Format a byte count into a human-readable string.

    :param n: Number of bytes.
    :type n: int
    :returns: Human-readable string.
    :rtype: str
    """
    for unit in ['', 'Ki', 'Mi', 'Gi', 'Ti']:
        if abs(n) < 1024:
            return f"{n:.2f} {unit}B"
        n /= 1024
    return f"{n:.2f} PiB"


class DecodeProgress:
    """Callable progress reporter for one decompression.

    Redraws the line only when the whole-percent value changes.

    :ivar label: Action label (e.g., "Decompressing").
    :type label: str
    :ivar path: Path displayed for the file being decoded.
    :type path: str
    """

    def __init__(self, label: str, path: str) -> None:
        """Initialize the reporter.

        :param label: Action label.
        :type label: str
        :param path: Path to display.
        :type path: str
        :returns: None
        :rtype: None
        """
        self.label = label
        self.path = path
        self._last_reported = -1

    def __call__(self, done: int, total: int) -> None:
        """Update the progress display.

        :param done: Bytes decompressed so far.
        :type done: int
        :param total: Expected decompressed size.
        :type total: int
        :returns: None
        :rtype: None
        """
        if total <= 0:
            return
        percent_bucket = int((done * 100) / total)
        if percent_bucket == self._last_reported:
            return
        self._last_reported = percent_bucket
        _print_progress(f"{self.label} {self.path}  {_fmt_pct(done, total)}")


def _load(path: str):
    """Read a whole input file, or report it missing and return ``None``."""
    try:
        with open(path, "rb") as f:
            return f.read()
    except FileNotFoundError:
        print(f"[!] Input file not found: {path}")
        return None


def decompress_file(input_path: str, output_path: str,
                    hide_progress: bool) -> None:
    """Decompress a BCFZ file and write the raw body to ``output_path``.

    :param input_path: BCFZ file to read.
    :type input_path: str
    :param output_path: Destination file path.
    :type output_path: str
    :param hide_progress: Whether to hide decompression progress.
    :type hide_progress: bool
    :returns: None
    :rtype: None
    :raises ValueError: If the file is not a valid BCFZ file.
    """
    data = _load(input_path)
    if data is None:
        return
    on_prog = None
    if not hide_progress:
        on_prog = DecodeProgress("Decompressing", input_path)
    out = gpx.decompress_bcfz(data, on_progress=on_prog)
    if not hide_progress:
        sys.stdout.write("\n")
        sys.stdout.flush()
    with open(output_path, "wb") as f:
        f.write(out)
    print("Size before decompression: ", _fmt_bytes(len(data)))
    print("Size after decompression: ", _fmt_bytes(len(out)))


def extract_file(input_path: str, dest_dir: str,
                 hide_progress: bool) -> None:
    """Extract every file of a .gpx container into ``dest_dir``.

    :param input_path: .gpx file to read.
    :type input_path: str
    :param dest_dir: Destination directory.
    :type dest_dir: str
    :param hide_progress: Whether to hide decompression progress.
    :type hide_progress: bool
    :returns: None
    :rtype: None
    :raises ValueError: If the container is invalid or a file name would
        escape ``dest_dir``.
    """
    data = _load(input_path)
    if data is None:
        return
    on_prog = None
    if not hide_progress:
        on_prog = DecodeProgress("Decompressing", input_path)
    files = gpx.read(data, on_progress=on_prog)
    if not hide_progress:
        sys.stdout.write("\n")
        sys.stdout.flush()

    dest_dir = os.path.abspath(dest_dir)
    os.makedirs(dest_dir, exist_ok=True)
    for entry in files:
        full_path = _safe_join(dest_dir, entry.name)
        os.makedirs(os.path.dirname(full_path), exist_ok=True)
        try:
            with open(full_path, "wb") as out:
                out.write(entry.data)
        except PermissionError:
            print(
                "[!] Permission error happened while "
                f"writing to a {entry.name}"
            )
            continue
        print(f"{entry.name}  {_fmt_bytes(len(entry.data))}")


def list_file(input_path: str) -> None:
    """Print the name and size of every file in a .gpx container.

    :param input_path: .gpx file to read.
    :type input_path: str
    :returns: None
    :rtype: None
    :raises ValueError: If the container is invalid.
    """
    data = _load(input_path)
    if data is None:
        return
    for entry in gpx.read(data):
        print(f"{entry.name}  {_fmt_bytes(len(entry.data))}")


def main(argv=None):
    """Entry point for the CLI tool.

    :param argv: Arguments to parse instead of ``sys.argv[1:]``.
    :type argv: Optional[List[str]]
    :returns: None
    :rtype: None
    """
    parser = get_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        if args.cmd in ["decompress", "d"]:
            decompress_file(
                args.input, args.output, getattr(args, "no_progress", False)
            )
        elif args.cmd in ["extract", "x"]:
            extract_file(
                args.input, args.output, getattr(args, "no_progress", False)
            )
        elif args.cmd in ["list", "l"]:
            list_file(args.input)
    except DecodeError as e:
        print(f"[!] Corrupt BCFZ data in {args.input}: {e}")
        sys.exit(1)
    except ValueError as e:
        print(f"[!] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
