"""
Configuration for the isolation core and the proxy runner.

Two layers:

* :class:`IsolationConfig`: immutable tunables consumed by the core
  (rule-id blocks, the host cap, which resource types a rule covers).
* :class:`ServerSettings`: where the runner listens and persists
  state.  Built by :func:`load_settings` from an INI file overlaid with
  command-line flags; a flag that is given always wins over the file.
"""

from __future__ import annotations

import argparse
import configparser
from dataclasses import dataclass, field
from typing import Optional, Sequence

DEFAULT_SESSION_ID = "default"

RESOURCE_TYPES: tuple[str, ...] = (
    "main_frame",
    "sub_frame",
    "xmlhttprequest",
    "script",
    "image",
    "font",
    "stylesheet",
    "media",
    "websocket",
    "other",
)


@dataclass(frozen=True)
class IsolationConfig:
    """Tunable knobs for rule synthesis.

    Attributes
    ----------
    rule_id_block_size:
        Consecutive identifiers reserved per install.  Each install only
        uses the first two, the rest is headroom so a rebuild never
        reuses an id that may still be pending removal.
    rule_cap:
        Global ceiling on concurrently installed rules enforced by the
        host rule engine.
    rules_per_tab:
        Rules emitted for one isolated tab.  Fixed at two: one request
        rule, one response rule.
    rule_priority:
        Priority given to every synthesized rule.
    resource_types:
        Resource types each rule is scoped to.
    tab_header:
        Request header the browser uses to tell the proxy which tab a
        request belongs to.  Stripped before forwarding.
    opener_header:
        Request header carrying the opener tab id on a tab's first request.
    """

    rule_id_block_size: int = 100
    rule_cap: int = 5000
    rules_per_tab: int = 2
    rule_priority: int = 1
    resource_types: tuple[str, ...] = RESOURCE_TYPES
    tab_header: str = "X-Tab-Id"
    opener_header: str = "X-Opener-Tab-Id"


DEFAULT_CONFIG = IsolationConfig()


@dataclass
class ServerSettings:
    host: str = "127.0.0.1"
    port: int = 8080
    control_host: str = "127.0.0.1"
    control_port: int = 8765
    state_file: Optional[str] = None
    log_level: str = "info"
    use_uvloop: bool = True
    isolation: IsolationConfig = field(default_factory=IsolationConfig)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tabjar", description="Per-tab cookie isolation proxy")
    parser.add_argument('-c', '--config', type=str, metavar='PATH', default='./tabjar.ini', help="Path to config")
    parser.add_argument('--host', dest='host', type=str, metavar='HOST', default=None, help='Proxy bind address (default: 127.0.0.1)')
    parser.add_argument('--port', dest='port', type=int, metavar='PORT', default=None, help='Proxy port (default: 8080)')
    parser.add_argument('--control-host', dest='control_host', type=str, metavar='HOST', default=None, help='Control server bind address (default: 127.0.0.1)')
    parser.add_argument('--control-port', dest='control_port', type=int, metavar='PORT', default=None, help='Control server port (default: 8765)')
    parser.add_argument('--state', dest='state_file', type=str, metavar='PATH', default=None, help='JSON file for persisted state (default: in-memory)')
    parser.add_argument('--log-level', dest='log_level', type=str, metavar='LEVEL', default=None, help='trace, debug, info, warning or error (default: info)')
    parser.add_argument("--uvloop", dest='use_uvloop', action=argparse.BooleanOptionalAction, default=None, help="Run on uvloop")
    return parser


def load_settings(argv: Optional[Sequence[str]] = None) -> ServerSettings:
    """Parse *argv* and the INI file it points at into :class:`ServerSettings`.

    A missing INI file is not an error; defaults apply.
    """
    args = build_parser().parse_args(argv)
    config = configparser.ConfigParser()
    config.read(args.config)
    return settings_from(args, config)


def settings_from(args: argparse.Namespace, config: configparser.ConfigParser) -> ServerSettings:
    defaults = ServerSettings()

    isolation = IsolationConfig(
        rule_id_block_size=config.getint("isolation", "rule_id_block_size", fallback=DEFAULT_CONFIG.rule_id_block_size),
        rule_cap=config.getint("isolation", "rule_cap", fallback=DEFAULT_CONFIG.rule_cap),
        rule_priority=config.getint("isolation", "rule_priority", fallback=DEFAULT_CONFIG.rule_priority),
        tab_header=config.get("isolation", "tab_header", fallback=DEFAULT_CONFIG.tab_header),
        opener_header=config.get("isolation", "opener_header", fallback=DEFAULT_CONFIG.opener_header),
    )
    if isolation.rule_id_block_size < isolation.rules_per_tab:
        raise ValueError(
            f"rule_id_block_size must be at least {isolation.rules_per_tab}, "
            f"got {isolation.rule_id_block_size}"
        )

    return ServerSettings(
        host=(
            args.host
            if args.host is not None
            else config.get("server", "host", fallback=defaults.host)
        ),
        port=(
            args.port
            if args.port is not None
            else config.getint("server", "port", fallback=defaults.port)
        ),
        control_host=(
            args.control_host
            if args.control_host is not None
            else config.get("control", "host", fallback=defaults.control_host)
        ),
        control_port=(
            args.control_port
            if args.control_port is not None
            else config.getint("control", "port", fallback=defaults.control_port)
        ),
        state_file=(
            args.state_file
            if args.state_file is not None
            else config.get("server", "state", fallback=defaults.state_file)
        ),
        log_level=(
            args.log_level
            if args.log_level is not None
            else config.get("server", "log_level", fallback=defaults.log_level)
        ),
        use_uvloop=(
            args.use_uvloop
            if args.use_uvloop is not None
            else config.getboolean("server", "uvloop", fallback=defaults.use_uvloop)
        ),
        isolation=isolation,
    )
