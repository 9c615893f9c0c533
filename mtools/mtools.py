"""
mtools - multicast test tools
Command line entry points for the msend sender and the mdump receiver.
"""

import logging
import signal
import socket
import sys
from pathlib import Path
from typing import Optional

import click

from .core.config import (DEFAULT_SNDBUF_SIZE, Config, FillMode, FramingMode,
                          ReceiverConfig, SenderConfig)
from .core.errors import ConfigurationError
from .core.logger import get_report_logger, setup_logging
from .protocol.stats import LossReport
from .receiver.verification_loop import VerificationLoop
from .reporting.loss_publisher import LossPublisher
from .sender.traffic_generator import TrafficGenerator
from .transport.membership import (default_buffer_size, open_receiver_session,
                                  open_sender_session)

FRAMING_CHOICES = click.Choice([mode.value for mode in FramingMode])
FILL_CHOICES = click.Choice([mode.value for mode in FillMode])


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    logging.info(f"Received signal {signum}, shutting down...")
    sys.exit(0)


def _install_signal_handlers() -> None:
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


def load_settings(config: Optional[str], verbose: bool,
                  output_mirror: Optional[Path] = None) -> Config:
    """Load process settings and set up logging."""
    if config:
        config_path = Path(config)
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file {config} not found")
        settings = Config.from_file(config_path)
    else:
        settings = Config.default()
    settings.validate()

    log_level = logging.DEBUG if verbose else getattr(logging, settings.logging.level.upper())
    setup_logging(settings.logging, log_level, output_mirror)

    if config:
        logging.info(f"Configuration loaded from {config}")
    return settings


def run_sender(config: SenderConfig) -> int:
    """Run the sender role; returns the number of data messages sent."""
    report = get_report_logger()
    if config.quiet < 2:
        report.info(f"Equiv cmd line: {config.equivalent_command()}")

    # Only warn about a small default send buffer if no size was asked for
    if not config.sndbuf_explicit:
        default_size = default_buffer_size(socket.SO_SNDBUF)
        if default_size < DEFAULT_SNDBUF_SIZE:
            report.warning(f"NOTE: system default SO_SNDBUF only {default_size} "
                           f"({DEFAULT_SNDBUF_SIZE} preferred)")

    with open_sender_session(config.endpoint, config.sndbuf_size, config.framing) as session:
        generator = TrafficGenerator(config, session)
        return generator.run()


def run_receiver(config: ReceiverConfig, settings: Config) -> Optional[LossReport]:
    """Run the receiver role; returns the last loss report, if any."""
    report = get_report_logger()
    report.info(f"Equiv cmd line: {config.equivalent_command()}")

    publisher = LossPublisher(settings)
    try:
        with open_receiver_session(config.endpoint, config.source_filter,
                                   config.rcvbuf_size, config.framing) as session:
            loop = VerificationLoop(config, session,
                                    publisher=publisher if publisher.enabled else None)
            return loop.run()
    finally:
        publisher.close()


def _run_role(role, verbose: bool) -> None:
    """Run a role with the shared fatal error policy: report and exit."""
    _install_signal_handlers()
    try:
        role()
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(0)
    except Exception as e:
        logging.error(f"Fatal error: {e}")
        if verbose:
            logging.exception("Full traceback:")
        sys.exit(1)


@click.command()
@click.option('-T', '--preset', type=click.IntRange(1, 5),
              help='Pre-load opts for a standard test: 1 basic connectivity, 2 long msgs, '
                   '3 moderate load, 4 heavy load, 5 VERY heavy load')
@click.option('-b', '--burst-count', type=click.IntRange(min=0),
              help='Number of messages per burst [1]')
@click.option('-d', '--decimal', is_flag=True, help='Decimal numbers in messages [hex]')
@click.option('-l', '--loops', type=click.IntRange(min=1), help='Number of times to loop test [1]')
@click.option('-m', '--msg-len', type=click.IntRange(min=0),
              help='Length of each message (0=use length of sequence number) [0]')
@click.option('-n', '--num-bursts', type=click.IntRange(min=0),
              help='Number of bursts to send (0=infinite) [0]')
@click.option('-P', '--payload', help='Hex digits for message content (implicit -m)')
@click.option('-p', '--pause', type=click.IntRange(min=0),
              help='Pause (milliseconds) between bursts [1000]')
@click.option('-q', '--quiet', count=True, help="Loop more quietly ('-qq' for complete silence)")
@click.option('-S', '--sndbuf-size', type=click.IntRange(min=0),
              help='Size (bytes) of send buffer (SO_SNDBUF), 0 for system default [65536]')
@click.option('-s', '--stat-pause', type=click.IntRange(min=0),
              help='Pause (milliseconds) before sending stat msg (0=no stat) [0]')
@click.option('-t', '--tcp', is_flag=True, help="TCP ('group' becomes destination IP)")
@click.option('-u', '--unicast-udp', is_flag=True, help="Unicast UDP ('group' becomes destination IP)")
@click.option('--fill', type=FILL_CHOICES, default=FillMode.STALE.value, show_default=True,
              help='Bytes past the text of a fixed-length message')
@click.option('--framing', type=FRAMING_CHOICES, default=FramingMode.SINGLE_READ.value,
              show_default=True, help='Message framing over TCP')
@click.option('--config', '-c', 'config_path', help='Configuration file path')
@click.option('--verbose', is_flag=True, help='Enable verbose logging')
@click.argument('group')
@click.argument('port', type=click.IntRange(0, 65535))
@click.argument('ttl', type=click.IntRange(0, 255), required=False)
@click.argument('interface', required=False)
def msend(preset, burst_count, decimal, loops, msg_len, num_bursts, payload, pause, quiet,
          sndbuf_size, stat_pause, tcp, unicast_udp, fill, framing, config_path, verbose,
          group, port, ttl, interface):
    """msend - send test traffic to a multicast group or unicast address"""

    def role():
        load_settings(config_path, verbose)
        config = SenderConfig.create(
            group, port, ttl=ttl, interface=interface, tcp=tcp, unicast_udp=unicast_udp,
            preset=preset, burst_count=burst_count, decimal=decimal, loops=loops,
            msg_len=msg_len, num_bursts=num_bursts, pause_ms=pause, payload_hex=payload,
            quiet=quiet, stat_pause_ms=stat_pause, sndbuf_size=sndbuf_size,
            fill_mode=FillMode(fill), framing=FramingMode(framing)
        )
        run_sender(config)

    _run_role(role, verbose)


@click.command()
@click.option('-o', '--output', type=click.Path(dir_okay=False),
              help='Print results to file (in addition to stdout)')
@click.option('-O', '--dump-file', type=click.Path(dir_okay=False),
              help='Dump packets to a binary file without text formatting')
@click.option('-p', '--pause', 'pause_spec',
              help='pause_ms[/num]: milliseconds to pause after each receive, '
                   'for the first num messages [0: no pause, all loops]')
@click.option('-Q', '--quiet-level', type=click.IntRange(0, 2), default=0,
              help='0 full dump, 1 summaries, 2 no print per datagram [0]')
@click.option('-q', '--quiet', is_flag=True, help="No print per datagram (same as '-Q 2')")
@click.option('-r', '--rcvbuf-size', type=click.IntRange(min=0),
              help='Size (bytes) of receive buffer (SO_RCVBUF), 0 for system default [4194304]')
@click.option('-s', '--stop', is_flag=True, help='Stop execution when status msg received')
@click.option('-t', '--tcp', is_flag=True, help="Use TCP (use '0.0.0.0' for group)")
@click.option('-v', '--verify', is_flag=True, help='Verify the sequence numbers')
@click.option('--framing', type=FRAMING_CHOICES, default=FramingMode.SINGLE_READ.value,
              show_default=True, help='Message framing over TCP')
@click.option('--config', '-c', 'config_path', help='Configuration file path')
@click.option('--verbose', is_flag=True, help='Enable verbose logging')
@click.argument('group')
@click.argument('port', type=click.IntRange(0, 65535))
@click.argument('interface', required=False)
@click.argument('sources', required=False)
def mdump(output, dump_file, pause_spec, quiet_level, quiet, rcvbuf_size, stop, tcp, verify,
          framing, config_path, verbose, group, port, interface, sources):
    """mdump - receive, dump and verify test traffic

    SOURCES is an optional IGMPv3 source list: '+a,b' includes only those
    sources, '-a' excludes them (put '--' before an exclusive list).
    """

    def role():
        output_path = Path(output) if output else None
        settings = load_settings(config_path, verbose, output_path)
        config = ReceiverConfig.create(
            group, port, interface=interface, sources=sources, tcp=tcp,
            rcvbuf_size=rcvbuf_size, pause_spec=pause_spec,
            quiet_level=2 if quiet else quiet_level, verify=verify, stop_on_stat=stop,
            output_path=output_path, dump_path=Path(dump_file) if dump_file else None,
            framing=FramingMode(framing)
        )
        run_receiver(config, settings)

    _run_role(role, verbose)


@click.group()
def cli():
    """mtools - multicast test sender and receiver"""


cli.add_command(msend)
cli.add_command(mdump)
