"""Command-line client for the bridge HTTP API."""

from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import dataclass
from typing import Any, Callable, Iterable, MutableMapping, Optional
from urllib.parse import quote

import httpx
import yaml

DEFAULT_SERVER_URL = "http://127.0.0.1:8000"
ENV_PREFIX = "LIFX_BRIDGE_"


class CliError(Exception):
    """Raised when the CLI encounters an expected error condition."""


@dataclass(frozen=True)
class ClientConfig:
    server_url: str
    api_key: Optional[str]
    api_bearer_token: Optional[str]
    output: str
    timeout: float = 10.0


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


def _device_path(device_id: str, suffix: str = "") -> str:
    return f"/devices/{quote(device_id, safe='')}{suffix}"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lifx-bridge",
        description=(
            "CLI for the LIFX HomeKit bridge API. Uses LIFX_BRIDGE_* env vars for "
            "defaults and prints JSON (default) or YAML. Examples: "
            "`lifx-bridge devices list`, `lifx-bridge devices command d0:73:d5:01:02:03 --on --brightness 40`."
        ),
    )
    parser.add_argument(
        "--server-url",
        default=_env("SERVER_URL", DEFAULT_SERVER_URL),
        help=f"Base URL for the bridge API (env: {ENV_PREFIX}SERVER_URL). Defaults to {DEFAULT_SERVER_URL}.",
    )
    parser.add_argument(
        "--api-key",
        default=_env("API_KEY"),
        help=(
            f"API key for authentication (env: {ENV_PREFIX}API_KEY). Sets both "
            "'X-API-Key' and 'Authorization: ApiKey <key>' headers when provided."
        ),
    )
    parser.add_argument(
        "--api-bearer-token",
        default=_env("API_BEARER_TOKEN"),
        help=f"Bearer token for authentication (env: {ENV_PREFIX}API_BEARER_TOKEN).",
    )
    parser.add_argument(
        "--output",
        choices=["json", "yaml"],
        default=_env("OUTPUT", "json"),
        help=f"Output format for responses (env: {ENV_PREFIX}OUTPUT).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("health", help="Check bridge health (GET /health)").set_defaults(func=_cmd_health)
    subparsers.add_parser(
        "status",
        help="Device counts and subsystem health (GET /status)",
    ).set_defaults(func=_cmd_status)
    subparsers.add_parser(
        "rescan",
        help="Broadcast a discovery probe now (POST /discovery/rescan)",
    ).set_defaults(func=_cmd_rescan)
    _add_device_commands(subparsers)
    return parser


def _add_device_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    devices = subparsers.add_parser(
        "devices",
        help="Inspect and control registered bulbs",
        description="Device ids are the bulb serials (MAC addresses) reported by discovery.",
    )
    device_sub = devices.add_subparsers(dest="device_command", required=True)

    device_sub.add_parser("list", help="List devices (GET /devices)").set_defaults(func=_cmd_devices_list)

    show = device_sub.add_parser("show", help="Show one device record (GET /devices/{id})")
    show.add_argument("device_id")
    show.set_defaults(func=_cmd_devices_show)

    state = device_sub.add_parser(
        "state",
        help="Read the light state, live when the bulb is reachable (GET /devices/{id}/state)",
    )
    state.add_argument("device_id")
    state.set_defaults(func=_cmd_devices_state)

    command = device_sub.add_parser(
        "command",
        help="Change power/colour (POST /devices/{id}/command)",
        description="Omitted fields keep their current value. Offline bulbs reject commands.",
    )
    command.add_argument("device_id")
    command.add_argument("--on", action="store_true", help="Turn the light on")
    command.add_argument("--off", action="store_true", help="Turn the light off")
    command.add_argument("--hue", type=float, help="Hue in degrees (0-360)")
    command.add_argument("--saturation", type=float, help="Saturation percent (0-100)")
    command.add_argument("--brightness", type=float, help="Brightness percent (1-100)")
    command.add_argument("--kelvin", type=int, help="Colour temperature in kelvin")
    command.add_argument("--fade-ms", type=int, help="Transition time in milliseconds")
    command.set_defaults(func=_cmd_devices_command)

    remove = device_sub.add_parser("remove", help="Forget a device (DELETE /devices/{id})")
    remove.add_argument("device_id")
    remove.add_argument("--ignore", action="store_true", help="Also ignore future announcements")
    remove.set_defaults(func=_cmd_devices_remove)


def _load_config(args: argparse.Namespace) -> ClientConfig:
    output = args.output or "json"
    if output not in {"json", "yaml"}:
        raise CliError("Output format must be 'json' or 'yaml'")
    return ClientConfig(
        server_url=args.server_url,
        api_key=args.api_key,
        api_bearer_token=args.api_bearer_token,
        output=output,
    )


def _build_client(config: ClientConfig) -> httpx.Client:
    headers: MutableMapping[str, str] = {}
    if config.api_key:
        headers["X-API-Key"] = config.api_key
        headers.setdefault("Authorization", f"ApiKey {config.api_key}")
    if config.api_bearer_token:
        headers["Authorization"] = f"Bearer {config.api_bearer_token}"
    return httpx.Client(base_url=config.server_url, headers=headers, timeout=config.timeout)


def _print_output(data: Any, output: str) -> None:
    if output == "yaml":
        yaml.safe_dump(data, sys.stdout, sort_keys=False)
    else:
        json.dump(data, sys.stdout, indent=2)
        sys.stdout.write("\n")


def _handle_response(response: httpx.Response) -> Any:
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        try:
            detail = response.json().get("detail")
        except (ValueError, AttributeError):
            detail = response.text
        raise CliError(f"Request failed ({response.status_code}): {detail}") from exc
    if response.content:
        return response.json()
    return None


def _cmd_health(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get("/health")), config.output)


def _cmd_status(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get("/status")), config.output)


def _cmd_rescan(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.post("/discovery/rescan")), config.output)


def _cmd_devices_list(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get("/devices")), config.output)


def _cmd_devices_show(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get(_device_path(args.device_id))), config.output)


def _cmd_devices_state(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get(_device_path(args.device_id, "/state"))), config.output)


def _cmd_devices_command(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    if args.on and args.off:
        raise CliError("Choose either --on or --off, not both.")
    payload: MutableMapping[str, Any] = {}
    if args.on or args.off:
        payload["power"] = bool(args.on)
    for name, minimum, maximum in (
        ("hue", 0, 360),
        ("saturation", 0, 100),
        ("brightness", 0, 100),
    ):
        value = getattr(args, name)
        if value is None:
            continue
        if value < minimum or value > maximum:
            raise CliError(f"{name.capitalize()} must be between {minimum} and {maximum}.")
        payload[name] = value
    if args.kelvin is not None:
        payload["kelvin"] = args.kelvin
    if not payload:
        raise CliError("At least one change is required (on, off, hue, saturation, brightness, kelvin).")
    if args.fade_ms is not None:
        if args.fade_ms < 0:
            raise CliError("Fade must not be negative.")
        payload["fade_ms"] = args.fade_ms
    data = _handle_response(client.post(_device_path(args.device_id, "/command"), json=payload))
    _print_output(data, config.output)


def _cmd_devices_remove(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    params = {"ignore": "true"} if args.ignore else None
    data = _handle_response(client.delete(_device_path(args.device_id), params=params))
    _print_output(data, config.output)


def main(argv: Optional[Iterable[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(args=argv)
    try:
        config = _load_config(args)
        with _build_client(config) as client:
            func: Callable[[ClientConfig, httpx.Client, argparse.Namespace], None] = args.func
            func(config, client, args)
    except CliError as exc:  # pragma: no cover - CLI feedback path
        sys.stderr.write(f"Error: {exc}\n")
        sys.exit(1)
    except httpx.RequestError as exc:  # pragma: no cover - CLI feedback path
        sys.stderr.write(f"HTTP request failed: {exc}\n")
        sys.exit(1)


if __name__ == "__main__":
    main()
