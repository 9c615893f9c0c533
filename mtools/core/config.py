"""
Configuration management for mtools.

Runtime parameters for the two roles arrive from the command line and are
frozen into ``SenderConfig`` / ``ReceiverConfig``. Process-wide settings
(logging, exporters) come from an optional TOML file loaded into ``Config``.
"""

import ipaddress
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple

import toml

from .errors import ConfigurationError

MAX_MESSAGE_SIZE = 65536
MAX_PAYLOAD_HEX_DIGITS = 65536
MAX_SOURCES = 32

DEFAULT_TTL = 2
DEFAULT_SNDBUF_SIZE = 65536
DEFAULT_RCVBUF_SIZE = 0x400000  # 4MB

# Infinite bursts are only allowed for light traffic
SAFE_BURST_COUNT = 50
SAFE_PAUSE_MS = 100

_HEX_RE = re.compile(r'^[0-9a-fA-F]*$')

logger = logging.getLogger(__name__)


class TransportKind(Enum):
    """How test traffic travels between the two endpoints."""
    MULTICAST_UDP = "multicast"
    UNICAST_UDP = "unicast"
    TCP = "tcp"


class FilterMode(Enum):
    """IGMPv3 source filter mode."""
    INCLUDE = "include"
    EXCLUDE = "exclude"


class FillMode(Enum):
    """What fills a fixed-length message past the end of its text.

    STALE sends whatever earlier writes left in the reused buffer, which is
    what deployed senders put on the wire. ZERO clears the tail first.
    """
    STALE = "stale"
    ZERO = "zero"


class FramingMode(Enum):
    """Message framing over a TCP byte stream."""
    SINGLE_READ = "single-read"
    LENGTH_PREFIXED = "length-prefixed"


def _parse_ipv4(text: str, what: str) -> str:
    try:
        return str(ipaddress.IPv4Address(text.strip()))
    except ValueError:
        raise ConfigurationError(f"Invalid {what} address: '{text}'")


@dataclass(frozen=True)
class TransportEndpoint:
    """Destination (sender) or listen (receiver) address."""
    address: str
    port: int
    kind: TransportKind
    ttl: int = DEFAULT_TTL
    interface: Optional[str] = None

    @property
    def is_multicast(self) -> bool:
        return self.kind == TransportKind.MULTICAST_UDP

    @property
    def is_tcp(self) -> bool:
        return self.kind == TransportKind.TCP

    def __str__(self) -> str:
        return f"{self.address}:{self.port}"


@dataclass(frozen=True)
class SourceFilter:
    """Ordered IGMPv3 source list tagged INCLUDE or EXCLUDE."""
    mode: FilterMode
    sources: Tuple[str, ...] = ()

    @property
    def is_include(self) -> bool:
        return self.mode == FilterMode.INCLUDE

    def __str__(self) -> str:
        sign = '+' if self.is_include else '-'
        return sign + ','.join(self.sources)


def parse_source_filter(text: Optional[str]) -> Optional[SourceFilter]:
    """Parse ``('+' | '-') addr (',' addr)*`` into a SourceFilter.

    A missing or blank string means no filtering and yields None. Empty
    items are skipped, so ``"+"`` is an INCLUDE filter without sources.
    """
    if text is None:
        return None

    text = text.lstrip()
    if not text:
        return None

    if text[0] == '+':
        mode = FilterMode.INCLUDE
    elif text[0] == '-':
        mode = FilterMode.EXCLUDE
    else:
        raise ConfigurationError(
            f"Bad igmpv3 sources string '{text}': must start with '+' or '-'"
        )

    items = [item for item in text[1:].split(',') if item.strip()]
    if len(items) > MAX_SOURCES:
        raise ConfigurationError(
            f"Too many igmpv3 sources ({len(items)}), at most {MAX_SOURCES} allowed"
        )

    sources = tuple(_parse_ipv4(item, "igmpv3 source") for item in items)
    return SourceFilter(mode=mode, sources=sources)


def parse_pause_spec(text: Optional[str]) -> Tuple[int, int]:
    """Parse a receiver pause of the form ``pause_ms[/num]``.

    Returns (pause_ms, pause_count); a count of 0 applies the pause to every
    received message.
    """
    if not text:
        return 0, 0

    ms_text, _, count_text = text.partition('/')
    try:
        pause_ms = int(ms_text)
        pause_count = int(count_text) if count_text else 0
    except ValueError:
        raise ConfigurationError(f"Bad pause specification '{text}', expected pause_ms[/num]")

    if pause_ms < 0 or pause_count < 0:
        raise ConfigurationError(f"Pause values must not be negative: '{text}'")

    return pause_ms, pause_count


def parse_payload_hex(text: str) -> bytes:
    """Convert the hex digits of an explicit payload to bytes."""
    if len(text) > MAX_PAYLOAD_HEX_DIGITS:
        raise ConfigurationError("Payload too big")
    if len(text) % 2 > 0:
        raise ConfigurationError("Payload must be even number of hex digits")
    if not _HEX_RE.match(text):
        raise ConfigurationError("Invalid hex digit in payload")
    return bytes.fromhex(text)


@dataclass(frozen=True)
class SenderPreset:
    """Canned option set for a standard test."""
    description: str
    burst_count: int
    msg_len: int
    num_bursts: int
    pause_ms: int
    stat_pause_ms: int = 2000
    quiet: int = 1
    # None means the system default buffer size
    sndbuf_size: Optional[int] = DEFAULT_SNDBUF_SIZE


PRESETS = {
    1: SenderPreset("basic connectivity (1 short msg per sec for 10 min)",
                    burst_count=1, msg_len=20, num_bursts=600, pause_ms=1000),
    2: SenderPreset("long msg len (1 5k msg each sec for 5 seconds)",
                    burst_count=1, msg_len=5000, num_bursts=5, pause_ms=1000),
    3: SenderPreset("moderate load (bursts of 100 8K msgs for 5 seconds)",
                    burst_count=100, msg_len=8 * 1024, num_bursts=50, pause_ms=100),
    4: SenderPreset("heavy load (1 burst of 5000 short msgs)",
                    burst_count=5000, msg_len=20, num_bursts=1, pause_ms=1000),
    5: SenderPreset("VERY heavy load (1 burst of 50,000 800-byte msgs)",
                    burst_count=50000, msg_len=800, num_bursts=1, pause_ms=1000,
                    sndbuf_size=None),
}


def _pick(explicit, preset_value, default):
    if explicit is not None:
        return explicit
    if preset_value is not None:
        return preset_value
    return default


@dataclass(frozen=True)
class SenderConfig:
    """Effective settings of one msend run."""
    endpoint: TransportEndpoint
    burst_count: int = 1
    decimal: bool = False
    loops: int = 1
    msg_len: int = 0
    num_bursts: int = 0
    pause_ms: int = 1000
    payload: Optional[bytes] = None
    quiet: int = 0
    stat_pause_ms: int = 0
    sndbuf_size: int = DEFAULT_SNDBUF_SIZE
    sndbuf_explicit: bool = False
    test_num: Optional[int] = None
    fill_mode: FillMode = FillMode.STALE
    framing: FramingMode = FramingMode.SINGLE_READ

    @classmethod
    def create(cls,
               group: str,
               port: int,
               ttl: Optional[int] = None,
               interface: Optional[str] = None,
               tcp: bool = False,
               unicast_udp: bool = False,
               preset: Optional[int] = None,
               burst_count: Optional[int] = None,
               decimal: bool = False,
               loops: Optional[int] = None,
               msg_len: Optional[int] = None,
               num_bursts: Optional[int] = None,
               pause_ms: Optional[int] = None,
               payload_hex: Optional[str] = None,
               quiet: int = 0,
               stat_pause_ms: Optional[int] = None,
               sndbuf_size: Optional[int] = None,
               fill_mode: FillMode = FillMode.STALE,
               framing: FramingMode = FramingMode.SINGLE_READ) -> 'SenderConfig':
        """Build and validate sender settings; explicit values beat preset values."""
        if tcp and unicast_udp:
            raise ConfigurationError("-t and -u are mutually exclusive")

        p = None
        if preset is not None:
            if preset not in PRESETS:
                raise ConfigurationError(f"Unknown test preset {preset}")
            p = PRESETS[preset]

        if tcp:
            kind = TransportKind.TCP
        elif unicast_udp:
            kind = TransportKind.UNICAST_UDP
        else:
            kind = TransportKind.MULTICAST_UDP

        ttl = DEFAULT_TTL if ttl is None else ttl
        if not 0 <= ttl <= 255:
            raise ConfigurationError(f"TTL must be between 0 and 255, got {ttl}")

        endpoint = TransportEndpoint(
            address=_parse_ipv4(group, "group"),
            port=port,
            kind=kind,
            ttl=ttl,
            interface=_parse_ipv4(interface, "interface") if interface else None
        )

        payload = None
        if payload_hex is not None:
            payload = parse_payload_hex(payload_hex)
            if msg_len is not None and msg_len != len(payload):
                logger.warning(f"Message length {msg_len} ignored, payload is {len(payload)} bytes")
            msg_len = len(payload)

        msg_len = _pick(msg_len, p and p.msg_len, 0)
        if msg_len > MAX_MESSAGE_SIZE:
            logger.warning(f"msg_len lowered to {MAX_MESSAGE_SIZE}")
            msg_len = MAX_MESSAGE_SIZE

        if p is not None and sndbuf_size is None:
            sndbuf_explicit = p.sndbuf_size is not None
            sndbuf_size = p.sndbuf_size or 0
        else:
            sndbuf_explicit = sndbuf_size is not None
            sndbuf_size = DEFAULT_SNDBUF_SIZE if sndbuf_size is None else sndbuf_size

        config = cls(
            endpoint=endpoint,
            burst_count=_pick(burst_count, p and p.burst_count, 1),
            decimal=decimal,
            loops=_pick(loops, p and 1, 1),
            msg_len=msg_len,
            num_bursts=_pick(num_bursts, p and p.num_bursts, 0),
            pause_ms=_pick(pause_ms, p and p.pause_ms, 1000),
            payload=payload,
            quiet=min(max(quiet, p.quiet if p else 0), 2),
            stat_pause_ms=_pick(stat_pause_ms, p and p.stat_pause_ms, 0),
            sndbuf_size=sndbuf_size,
            sndbuf_explicit=sndbuf_explicit,
            test_num=preset,
            fill_mode=fill_mode,
            framing=framing
        )
        config.validate()
        return config

    def validate(self) -> bool:
        """Validate combinations of sender settings."""
        for name in ('burst_count', 'loops', 'msg_len', 'num_bursts',
                     'pause_ms', 'stat_pause_ms', 'sndbuf_size'):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must not be negative")

        # Prevent careless usage from killing the network
        if self.num_bursts == 0 and (self.burst_count > SAFE_BURST_COUNT
                                     or self.pause_ms < SAFE_PAUSE_MS):
            raise ConfigurationError(
                "Danger - heavy traffic chosen with infinite num bursts.\n"
                "Use -n to limit execution time"
            )

        return True

    def equivalent_command(self) -> str:
        """Restate the effective settings as an msend command line."""
        quiet_opt = {0: " ", 1: " -q ", 2: " -qq "}[self.quiet]
        if self.endpoint.is_tcp:
            transport_opt = " -t "
        elif self.endpoint.kind == TransportKind.UNICAST_UDP:
            transport_opt = " -u "
        else:
            transport_opt = " "

        cmd = (f"msend -b{self.burst_count}{' -d ' if self.decimal else ' '}"
               f"-m{self.msg_len} -n{self.num_bursts} -p{self.pause_ms}{quiet_opt}"
               f"-s{self.stat_pause_ms} -S{self.sndbuf_size}{transport_opt}"
               f"{self.endpoint.address} {self.endpoint.port} {self.endpoint.ttl}")
        if self.endpoint.interface:
            cmd += f" {self.endpoint.interface}"
        return cmd


@dataclass(frozen=True)
class ReceiverConfig:
    """Effective settings of one mdump run."""
    endpoint: TransportEndpoint
    source_filter: Optional[SourceFilter] = None
    rcvbuf_size: int = DEFAULT_RCVBUF_SIZE
    pause_ms: int = 0
    pause_count: int = 0
    quiet_level: int = 0
    verify: bool = False
    stop_on_stat: bool = False
    output_path: Optional[Path] = None
    dump_path: Optional[Path] = None
    framing: FramingMode = FramingMode.SINGLE_READ

    @classmethod
    def create(cls,
               group: str,
               port: int,
               interface: Optional[str] = None,
               sources: Optional[str] = None,
               tcp: bool = False,
               rcvbuf_size: Optional[int] = None,
               pause_spec: Optional[str] = None,
               quiet_level: int = 0,
               verify: bool = False,
               stop_on_stat: bool = False,
               output_path: Optional[Path] = None,
               dump_path: Optional[Path] = None,
               framing: FramingMode = FramingMode.SINGLE_READ) -> 'ReceiverConfig':
        """Build and validate receiver settings."""
        address = _parse_ipv4(group, "group")
        source_filter = parse_source_filter(sources)

        if tcp:
            kind = TransportKind.TCP
        elif ipaddress.IPv4Address(address).is_multicast:
            kind = TransportKind.MULTICAST_UDP
        else:
            kind = TransportKind.UNICAST_UDP

        pause_ms, pause_count = parse_pause_spec(pause_spec)

        config = cls(
            endpoint=TransportEndpoint(
                address=address,
                port=port,
                kind=kind,
                interface=_parse_ipv4(interface, "interface") if interface else None
            ),
            source_filter=source_filter,
            rcvbuf_size=DEFAULT_RCVBUF_SIZE if rcvbuf_size is None else rcvbuf_size,
            pause_ms=pause_ms,
            pause_count=pause_count,
            quiet_level=quiet_level,
            verify=verify,
            stop_on_stat=stop_on_stat,
            output_path=output_path,
            dump_path=dump_path,
            framing=framing
        )
        config.validate()
        return config

    def validate(self) -> bool:
        """Validate combinations of receiver settings."""
        if self.endpoint.is_tcp:
            if self.endpoint.address != '0.0.0.0':
                raise ConfigurationError("-t incompatible with non-zero multicast group")

        if not 0 <= self.quiet_level <= 2:
            raise ConfigurationError(f"Quiet level must be 0, 1 or 2, got {self.quiet_level}")

        if self.rcvbuf_size < 0:
            raise ConfigurationError("rcvbuf_size must not be negative")

        return True

    def equivalent_command(self) -> str:
        """Restate the effective settings as an mdump command line."""
        parts = ["mdump"]
        if self.output_path:
            parts.append(f"-o {self.output_path}")
        if self.dump_path:
            parts.append(f"-O {self.dump_path}")
        pause = f"-p{self.pause_ms}"
        if self.pause_count:
            pause += f"/{self.pause_count}"
        parts += [pause, f"-Q{self.quiet_level}", f"-r{self.rcvbuf_size}"]
        if self.stop_on_stat:
            parts.append("-s")
        if self.endpoint.is_tcp:
            parts.append("-t")
        if self.verify:
            parts.append("-v")
        parts += [self.endpoint.address, str(self.endpoint.port)]
        if self.endpoint.interface or self.source_filter:
            parts.append(self.endpoint.interface or '0.0.0.0')
        if self.source_filter:
            parts.append(str(self.source_filter))
        return ' '.join(parts)


@dataclass
class LoggingConfig:
    """Logging configuration settings."""
    level: str = "INFO"
    file: str = ""
    max_size: int = 10
    backup_count: int = 5


@dataclass
class InfluxDBConfig:
    """InfluxDB configuration settings."""
    enabled: bool = False
    url: str = ""
    database: str = ""
    organization: str = ""
    token: str = ""


@dataclass
class MonitoringConfig:
    """Monitoring configuration settings."""
    webhook_enabled: bool = False
    webhook_url: str = ""


@dataclass
class Config:
    """Process-wide settings shared by msend and mdump."""
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    influxdb: InfluxDBConfig = field(default_factory=InfluxDBConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    @classmethod
    def default(cls) -> 'Config':
        return cls()

    @classmethod
    def from_file(cls, config_path: Path) -> 'Config':
        """Load configuration from TOML file."""
        try:
            config_data = toml.load(config_path)

            logging_config = LoggingConfig(
                level=config_data['logging']['level'],
                file=config_data['logging']['file'],
                max_size=config_data['logging']['max_size'],
                backup_count=config_data['logging']['backup_count']
            )

            influxdb = InfluxDBConfig()
            if 'influxdb' in config_data:
                influxdb = InfluxDBConfig(
                    enabled=config_data['influxdb']['enabled'],
                    url=config_data['influxdb']['url'],
                    database=config_data['influxdb']['database'],
                    organization=config_data['influxdb']['organization'],
                    token=config_data['influxdb']['token']
                )

            monitoring = MonitoringConfig()
            if 'monitoring' in config_data:
                monitoring = MonitoringConfig(
                    webhook_enabled=config_data['monitoring']['webhook_enabled'],
                    webhook_url=config_data['monitoring']['webhook_url']
                )

            return cls(
                logging=logging_config,
                influxdb=influxdb,
                monitoring=monitoring
            )

        except KeyError as e:
            raise ConfigurationError(f"Missing required configuration key: {e}")
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def validate(self) -> bool:
        """Validate configuration values."""
        if not isinstance(logging.getLevelName(self.logging.level.upper()), int):
            raise ConfigurationError(f"Unknown log level '{self.logging.level}'")

        if self.influxdb.enabled and not self.influxdb.url:
            raise ConfigurationError("InfluxDB enabled but no url configured")

        if self.monitoring.webhook_enabled and not self.monitoring.webhook_url:
            raise ConfigurationError("Webhook enabled but no webhook_url configured")

        return True
