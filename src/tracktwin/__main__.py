"""CLI interface for tracktwin."""

import argparse
import csv
import json
import sys
from pathlib import Path
from typing import List, Optional

from colorama import Fore, Style, init

try:
    from shtab import DIRECTORY, FILE
except ImportError:
    # shtab not installed - tab completion won't work but that's okay
    DIRECTORY = FILE = None  # type: ignore

from . import __version__
from .cache import CacheStore
from .config import (
    cache_dir_from_config,
    load_config,
    save_config,
    scan_options_from_config,
    scan_options_to_config,
)
from .errors import ScanCancelled
from .groups import DuplicateGroup, FileDetail, quality_reason, quality_score
from .scanner import DuplicateScanner, ScanOptions, ScanResult, library_root

# Initialize colorama for cross-platform color support
init(autoreset=True)


def format_size(size_bytes: int) -> str:
    """Format a byte count as a human-readable string."""
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024.0:
            return f"{size:.1f} {unit}"
        size /= 1024.0
    return f"{size:.1f} TB"


def format_duration(duration_ms: int) -> str:
    if duration_ms <= 0:
        return "?:??"
    total_seconds = duration_ms // 1000
    return f"{total_seconds // 60}:{total_seconds % 60:02d}"


def ordered_details(group: DuplicateGroup) -> List[FileDetail]:
    """
    Best file first, then the rest by quality ascending.

    Shows deletion candidates right after the file to keep.
    """
    best = [d for d in group.file_details if d.path == group.best_quality_file]
    rest = [d for d in group.file_details if d.path != group.best_quality_file]
    rest.sort(key=lambda d: (quality_score(d), d.path))
    return best + rest


def _sorted_groups(groups: List[DuplicateGroup]) -> List[DuplicateGroup]:
    return sorted(groups, key=lambda g: (-g.total_size, g.title.lower(), g.artist.lower()))


def format_output_text(groups: List[DuplicateGroup]) -> None:
    """Format and print duplicate groups in text format with quality info."""
    if not groups:
        print("No duplicates found.")
        return

    print(
        f"{Fore.CYAN}{Style.BRIGHT}Found {len(groups)} group(s) "
        f"of duplicate tracks:{Style.RESET_ALL}\n"
    )

    for idx, group in enumerate(_sorted_groups(groups), 1):
        label = " - ".join(part for part in (group.artist, group.title) if part)
        print(
            f"{Fore.CYAN}{Style.BRIGHT}Group {idx}{Style.RESET_ALL} "
            f"{label or '(untitled)'} "
            f"{Style.DIM}({format_duration(group.representative_duration)}, "
            f"{group.source.value}){Style.RESET_ALL}"
        )

        details = ordered_details(group)
        for pos, detail in enumerate(details):
            audio_info = quality_reason(detail) or detail.format
            size = format_size(detail.size)
            if detail.path == group.best_quality_file:
                print(
                    f"  {Fore.LIGHTGREEN_EX}{Style.BRIGHT}[Best]{Style.RESET_ALL} "
                    f"{detail.path} {Style.DIM}({size}){Style.RESET_ALL} - "
                    f"{Fore.LIGHTGREEN_EX}{audio_info}{Style.RESET_ALL}"
                )
            else:
                # Use └─ for last item, ├─ for others
                tree_char = "└─" if pos == len(details) - 1 else "├─"
                print(
                    f"    {tree_char} {detail.path} {Style.DIM}({size})"
                    f"{Style.RESET_ALL} - {audio_info}"
                )
        print()


def format_output_json(groups: List[DuplicateGroup]) -> None:
    """Format and print duplicate groups in JSON format."""
    output = []
    for group in _sorted_groups(groups):
        data = group.to_dict()
        data["file_details"] = [
            dict(d.to_dict(), is_best=d.path == group.best_quality_file)
            for d in ordered_details(group)
        ]
        output.append(data)
    print(json.dumps(output, indent=2))


def format_output_csv(groups: List[DuplicateGroup]) -> None:
    """Format and print duplicate groups in CSV format."""
    writer = csv.writer(sys.stdout)
    writer.writerow(
        [
            "group_id",
            "title",
            "artist",
            "source",
            "file_path",
            "file_size_bytes",
            "format",
            "audio_info",
            "quality_score",
            "is_best",
        ]
    )
    for idx, group in enumerate(_sorted_groups(groups), 1):
        for detail in ordered_details(group):
            writer.writerow(
                [
                    idx,
                    group.title,
                    group.artist,
                    group.source.value,
                    detail.path,
                    detail.size,
                    detail.format,
                    quality_reason(detail),
                    quality_score(detail),
                    "true" if detail.path == group.best_quality_file else "false",
                ]
            )


def get_parser() -> argparse.ArgumentParser:
    """
    Get the argument parser for tracktwin.

    This function is used by tab completion tools (e.g., shtab) to generate
    completion scripts.

    Returns:
        ArgumentParser configured with all tracktwin options
    """
    parser = argparse.ArgumentParser(
        prog="tracktwin",
        description="Find duplicate audio tracks in a music library.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s ~/Music
  %(prog)s ~/Music --hash --fingerprint --output json
  %(prog)s ~/Music --filename-fallback --ignore-duration
  %(prog)s --check a.flac b.mp3 --hash
        """,
    )

    path_arg = parser.add_argument(
        "path",
        nargs="?",
        type=Path,
        help="Library directory to scan",
    )
    if DIRECTORY is not None:
        path_arg.complete = DIRECTORY  # type: ignore

    check_arg = parser.add_argument(
        "--check",
        nargs="+",
        type=Path,
        metavar="FILE",
        help="Re-check whether the given files still form one duplicate group",
    )
    if FILE is not None:
        check_arg.complete = FILE  # type: ignore

    parser.add_argument(
        "-o",
        "--output",
        choices=["text", "json", "csv"],
        default="text",
        help="Output format (default: text)",
    )

    parser.add_argument(
        "--hash",
        dest="use_hash",
        action="store_true",
        default=None,
        help="Also group byte-identical files by SHA-1",
    )

    parser.add_argument(
        "--fingerprint",
        dest="use_fingerprint",
        action="store_true",
        default=None,
        help="Also group files by acoustic fingerprint (requires fpcalc)",
    )

    parser.add_argument(
        "--filename-fallback",
        dest="use_filename_fallback",
        action="store_true",
        default=None,
        help="Guess title/artist from the file name when tags are missing",
    )

    parser.add_argument(
        "--ignore-duration",
        action="store_true",
        default=None,
        help="Group tracks regardless of their duration",
    )

    parser.add_argument(
        "--duration-tolerance",
        dest="duration_tolerance_ms",
        type=int,
        metavar="MS",
        help="Duration window for metadata grouping in milliseconds (default: 3000)",
    )

    parser.add_argument(
        "-w",
        "--workers",
        dest="worker_count",
        type=int,
        metavar="N",
        help="Number of worker threads (default: twice the CPU count)",
    )

    parser.add_argument(
        "--min-size",
        type=int,
        metavar="BYTES",
        help="Minimum file size in bytes to consider (default: 0)",
    )

    parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Disable cache (read all files from scratch)",
    )

    parser.add_argument(
        "--clear-cache",
        action="store_true",
        help="Delete the cache for the given path and exit",
    )

    parser.add_argument(
        "--prune-cache",
        action="store_true",
        help="Drop cache entries for files that no longer exist and exit",
    )

    config_arg = parser.add_argument(
        "--config",
        type=Path,
        metavar="PATH",
        help="Configuration file (default: ~/.config/tracktwin/tracktwin.toml)",
    )
    if FILE is not None:
        config_arg.complete = FILE  # type: ignore

    parser.add_argument(
        "--save-config",
        action="store_true",
        help="Write the effective scan settings (config file plus flags) to the "
        "config file and exit",
    )

    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Disable progress output (progress shown by default)",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = get_parser()
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI."""
    args = parse_args(argv)

    try:
        config = load_config(args.config)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    if args.save_config:
        return run_save_config(args, config)

    cache_store = CacheStore(cache_dir_from_config(config))

    if args.clear_cache or args.prune_cache:
        if args.path is None:
            print("Error: a library path is required", file=sys.stderr)
            return 1
        return run_cache_command(args, cache_store)

    if args.check:
        return run_check_mode(args, config, cache_store)

    if args.path is None:
        print("Error: the following arguments are required: path", file=sys.stderr)
        return 1
    return run_scan_mode(args, config, cache_store)


def run_cache_command(args: argparse.Namespace, cache_store: CacheStore) -> int:
    """Handle --clear-cache and --prune-cache."""
    root = library_root(args.path)
    try:
        if args.clear_cache:
            if cache_store.clear(root):
                print(f"Cache cleared: {cache_store.path_for_root(root)}")
            else:
                print(f"No cache to clear: {cache_store.path_for_root(root)}")
            return 0
        removed = cache_store.prune(root)
        print(f"Pruned {removed} stale cache entr{'y' if removed == 1 else 'ies'}")
        return 0
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _scan_options(args: argparse.Namespace, config: dict) -> ScanOptions:
    return scan_options_from_config(
        config,
        use_hash=args.use_hash,
        use_fingerprint=args.use_fingerprint,
        use_filename_fallback=args.use_filename_fallback,
        ignore_duration=args.ignore_duration,
        duration_tolerance_ms=args.duration_tolerance_ms,
        worker_count=args.worker_count,
        min_size=args.min_size,
    )


def run_save_config(args: argparse.Namespace, config: dict) -> int:
    """Handle --save-config."""
    try:
        config_file = save_config(
            scan_options_to_config(config, _scan_options(args, config)), args.config
        )
    except (OSError, TypeError, ValueError) as e:
        print(f"Error: Failed to save config: {e}", file=sys.stderr)
        return 1
    print(f"Configuration saved: {config_file}")
    return 0


def _build_scanner(
    args: argparse.Namespace, config: dict, cache_store: CacheStore
) -> DuplicateScanner:
    return DuplicateScanner(
        _scan_options(args, config),
        cache_store=cache_store,
        use_cache=not args.no_cache,
        verbose=not args.no_progress,
    )


def print_groups(groups: List[DuplicateGroup], output: str) -> None:
    if output == "json":
        format_output_json(groups)
    elif output == "csv":
        format_output_csv(groups)
    else:
        format_output_text(groups)


def _report_errors(result: ScanResult) -> None:
    if result.errors:
        print(
            f"{Fore.YELLOW}Warning: {len(result.errors)} file(s) could not be "
            f"scanned{Style.RESET_ALL}",
            file=sys.stderr,
        )


def run_scan_mode(args: argparse.Namespace, config: dict, cache_store: CacheStore) -> int:
    """Scan a library and print duplicate groups."""
    try:
        scanner = _build_scanner(args, config, cache_store)
        result = scanner.scan(args.path)
    except (KeyboardInterrupt, ScanCancelled):
        print("\nOperation cancelled by user.", file=sys.stderr)
        return 130
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print_groups(result.groups, args.output)
    _report_errors(result)

    # Exit with non-zero if duplicates found (for scripting)
    return 0 if not result.groups else 2


def run_check_mode(args: argparse.Namespace, config: dict, cache_store: CacheStore) -> int:
    """Re-check a set of files and print the group they form, if any."""
    try:
        scanner = _build_scanner(args, config, cache_store)
        group = scanner.check_group(args.check)
    except (KeyboardInterrupt, ScanCancelled):
        print("\nOperation cancelled by user.", file=sys.stderr)
        return 130
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print_groups([group] if group is not None else [], args.output)
    return 0 if group is None else 2


if __name__ == "__main__":
    sys.exit(main())
