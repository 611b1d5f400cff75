#!/usr/bin/env python3
"""Write a .env for iris-api from .env.example.

A fresh admin token is generated unless one is passed in. The production
profile also switches the model, embedding and cache backends away from
the local stubs.
"""
from __future__ import annotations

import argparse
import secrets
import sys
from pathlib import Path

PROFILE_OVERRIDES: dict[str, dict[str, str]] = {
    "local-dev": {
        "LLM_PROVIDER": "stub",
        "EMBEDDING_PROVIDER": "stub",
        "ANSWER_CACHE_BACKEND": "memory",
    },
    "production": {
        "LLM_PROVIDER": "openai_compatible",
        "EMBEDDING_PROVIDER": "openai_compatible",
        "ANSWER_CACHE_BACKEND": "redis",
    },
}


def apply_overrides(template: str, overrides: dict[str, str]) -> str:
    pending = dict(overrides)
    rendered: list[str] = []
    for line in template.splitlines():
        key = line.split("=", 1)[0].strip() if "=" in line and not line.lstrip().startswith("#") else ""
        if key in pending:
            rendered.append(f"{key}={pending.pop(key)}")
        else:
            rendered.append(line)
    rendered.extend(f"{key}={value}" for key, value in pending.items())
    return "\n".join(rendered) + "\n"


def _mask(token: str) -> str:
    return f"{token[:4]}...{token[-4:]}" if len(token) >= 12 else "*" * len(token)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--example", type=Path, default=Path(".env.example"))
    parser.add_argument("--output", type=Path, default=Path(".env"))
    parser.add_argument("--admin-id", default="local-admin")
    parser.add_argument("--token", default="", help="generated when empty")
    parser.add_argument("--profile", choices=sorted(PROFILE_OVERRIDES), default="local-dev")
    parser.add_argument("--force", action="store_true", help="overwrite an existing output file")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    if not args.example.is_file():
        print(f"init_local_env: template not found: {args.example}", file=sys.stderr)
        return 2
    if args.output.exists() and not args.force:
        print(f"init_local_env: {args.output} exists, pass --force to replace it", file=sys.stderr)
        return 1

    token = args.token.strip() or secrets.token_urlsafe(32)
    overrides = {
        "CONFIG_PROFILE": args.profile,
        "ADMIN_AUTH_ENABLED": "true",
        "ADMIN_TOKENS": f"{args.admin_id}:{token}",
        **PROFILE_OVERRIDES[args.profile],
    }
    args.output.write_text(
        apply_overrides(args.example.read_text(encoding="utf-8"), overrides),
        encoding="utf-8",
        newline="\n",
    )
    print(f"init_local_env: wrote {args.output} ({args.profile})")
    print(f"init_local_env: ADMIN_TOKENS={args.admin_id}:{_mask(token)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
