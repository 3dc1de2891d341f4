from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

import uvicorn
import yaml
from pydantic import ValidationError

from .config import CONFIG_PATH_ENV, RootConfig, ServiceCfg, build_credential, load_config
from .errors import RenewableCredentialsError


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="renewable-credentials")
    parser.add_argument("--config", help="path to the YAML configuration file")
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="run the signing relay (default)")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int)

    sub.add_parser("token", help="print the current token as JSON")
    return parser.parse_args(argv)


def _fail(message: str) -> SystemExit:
    print(f"error: {message}", file=sys.stderr)
    return SystemExit(1)


def _load(config_path: str | None) -> RootConfig:
    try:
        return load_config(config_path)
    except FileNotFoundError as exc:
        raise _fail(f"configuration file not found: {exc}") from exc
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first["loc"]) or "<root>"
        raise _fail(f"invalid configuration at {location}: {first['msg']}") from exc
    except (ValueError, yaml.YAMLError) as exc:
        raise _fail(f"invalid configuration: {exc}") from exc


async def _print_token(cfg: RootConfig) -> None:
    async with build_credential(cfg.credential) as credential:
        token = await credential.get_token()
    print(
        json.dumps(
            {
                "tokenType": token.token_type,
                "accessToken": token.access_token,
                "expiresOn": token.expires_on,
                "accountId": token.account_id,
            },
            indent=2,
        )
    )


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)

    if args.command == "token":
        cfg = _load(args.config)
        try:
            asyncio.run(_print_token(cfg))
        except RenewableCredentialsError as exc:
            raise _fail(str(exc)) from exc
        return

    if args.config:
        # the relay app reads its configuration on startup
        os.environ[CONFIG_PATH_ENV] = args.config
    cfg = _load(args.config)
    port = getattr(args, "port", None) or (cfg.service or ServiceCfg()).port
    host = getattr(args, "host", None) or "127.0.0.1"
    uvicorn.run("renewable_credentials.relay_app:app", host=host, port=port)
