"""Runtime configuration for synced Mancala viewers."""

from __future__ import annotations

import argparse
import dataclasses
import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from mancala_codec import state_key
from mancala_telemetry import parse_host_port

DEFAULT_INSTANCE = "default"
DEFAULT_POLL_INTERVAL_S = 0.2


@dataclass(frozen=True)
class SyncConfig:
    instance: str = DEFAULT_INSTANCE
    relay: Optional[Tuple[str, int]] = None
    telemetry: Optional[Tuple[str, int]] = None
    poll_interval_s: float = DEFAULT_POLL_INTERVAL_S
    bootstrap_timeout_s: Optional[float] = None

    @property
    def key(self) -> str:
        return state_key(self.instance)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SyncConfig":
        env = os.environ if environ is None else environ
        instance = env.get("MANCALA_INSTANCE", "").strip() or DEFAULT_INSTANCE
        return cls(
            instance=instance,
            relay=_address_from_env(env, "MANCALA_RELAY"),
            telemetry=_address_from_env(env, "MANCALA_TELEMETRY"),
        )

    def replace(self, **changes: object) -> "SyncConfig":
        return dataclasses.replace(self, **changes)


def _address_from_env(env: Mapping[str, str], name: str) -> Optional[Tuple[str, int]]:
    raw = env.get(name, "")
    if not raw.strip():
        return None
    address = parse_host_port(raw)
    if address is None:
        raise ValueError(f"{name} must be HOST:PORT, got {raw!r}")
    return address


def _host_port_arg(value: str) -> Tuple[str, int]:
    address = parse_host_port(value)
    if address is None:
        raise argparse.ArgumentTypeError(f"expected HOST:PORT, got {value!r}")
    return address


def add_sync_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--instance", help="game instance identifier shared by all viewers")
    parser.add_argument(
        "--relay",
        type=_host_port_arg,
        help="HOST:PORT of a relay server (default: in-process hot-seat store)",
    )
    parser.add_argument(
        "--telemetry",
        type=_host_port_arg,
        help="HOST:PORT to stream sync telemetry as JSON lines",
    )
    parser.add_argument(
        "--bootstrap-timeout",
        type=float,
        default=None,
        help="seconds to wait for a viewer identity before giving up (default: wait forever)",
    )


def config_from_args(args: argparse.Namespace, base: Optional[SyncConfig] = None) -> SyncConfig:
    config = base if base is not None else SyncConfig()
    changes = {}
    if args.instance:
        changes["instance"] = args.instance
    if args.relay is not None:
        changes["relay"] = args.relay
    if args.telemetry is not None:
        changes["telemetry"] = args.telemetry
    if args.bootstrap_timeout is not None:
        changes["bootstrap_timeout_s"] = args.bootstrap_timeout
    return config.replace(**changes)
