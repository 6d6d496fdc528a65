from __future__ import annotations

import argparse
import os
from pathlib import Path

from sealchat.cmd.server import load_config
from sealchat.core.auth import SessionSigner
from sealchat.server.runtime import SECRET_ENV


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Issue a sealchat session token")
    parser.add_argument("--config", required=True, help="Path to server YAML config")
    parser.add_argument("--user", required=True, help="User id to issue the token for")
    args = parser.parse_args(argv)

    config = load_config(Path(args.config))
    known = {str(u.get("user_id")) for u in config.get("users") or [] if isinstance(u, dict)}
    if args.user not in known:
        parser.error(f"user {args.user!r} is not in the config's users list")

    signer = SessionSigner(
        os.getenv(SECRET_ENV) or config.get("session_secret"),
        ttl_secs=int(config.get("session_ttl_secs", 7 * 24 * 3600)),
    )
    print(signer.issue(args.user))


if __name__ == "__main__":
    main()
