"""
BACnet capture inspector CLI.

Analyzes a pcap/pcapng file, prints a report and optionally saves a
snapshot that can be reported on later without the original capture.
"""

import logging
import sys
from typing import Optional

import click

from .analyzer import AnalysisOptions, BACnetAnalyzer
from .errors import AnalyzerError, OperationCancelled
from .reporting import generate_full_report, generate_snapshot_report, print_report
from .snapshot_codec import is_valid_snapshot, load_snapshot, save_snapshot

logger = logging.getLogger(__name__)


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(levelname)s: %(message)s",
    )


def _report_progress(phase: str, text: str, percent: int) -> None:
    logger.debug("[%s] %s (%d%%)", phase, text, percent)


@click.group()
def main():
    """Inspect BACnet traffic in packet capture files."""


@main.command()
@click.argument("pcap_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "-o",
    "--output",
    "output_file",
    type=click.Path(dir_okay=False),
    help="Save the analysis as a snapshot file.",
)
@click.option("--no-deep", is_flag=True, help="Skip the tshark deep decode pass.")
@click.option(
    "--tshark",
    "tshark_path",
    type=click.Path(dir_okay=False),
    help="Location of the tshark executable.",
)
@click.option(
    "--all-packets",
    is_flag=True,
    help="Save every frame in the snapshot, not only BACnet frames.",
)
@click.option("--debug", is_flag=True, help="Enable debug output.")
def analyze(
    pcap_file: str,
    output_file: Optional[str],
    no_deep: bool,
    tshark_path: Optional[str],
    all_packets: bool,
    debug: bool,
):
    """Analyze a capture file and print a report."""
    configure_logging(debug)

    options = AnalysisOptions(
        deep_decode=not no_deep,
        tshark_path=tshark_path,
        only_protocol_packets=not all_packets,
        progress=_report_progress,
    )
    try:
        result = BACnetAnalyzer(options).analyze_pcap(pcap_file)
        print_report(generate_full_report(result))

        if output_file:
            snapshot = result.to_snapshot(only_protocol_packets=options.only_protocol_packets)
            written = save_snapshot(output_file, snapshot, progress=_report_progress)
            click.echo(f"\nSnapshot saved to {output_file} ({written} packets)")
    except OperationCancelled:
        click.echo("Operation cancelled")
        sys.exit(130)
    except AnalyzerError as err:
        click.echo(f"Error: {err}", err=True)
        sys.exit(1)


@main.command()
@click.argument("snapshot_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--debug", is_flag=True, help="Enable debug output.")
def report(snapshot_file: str, debug: bool):
    """Print the report of a saved snapshot."""
    configure_logging(debug)
    try:
        snapshot = load_snapshot(snapshot_file)
    except AnalyzerError as err:
        click.echo(f"Error: {err}", err=True)
        sys.exit(1)
    print_report(generate_snapshot_report(snapshot))


@main.command()
@click.argument("snapshot_file", type=click.Path(exists=True, dir_okay=False))
def check(snapshot_file: str):
    """Check that a file is a valid snapshot (exit code 0 or 1)."""
    if is_valid_snapshot(snapshot_file):
        click.echo(f"{snapshot_file}: valid snapshot")
        return
    click.echo(f"{snapshot_file}: not a valid snapshot")
    sys.exit(1)


if __name__ == "__main__":
    main()
