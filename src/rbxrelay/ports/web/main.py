from __future__ import annotations

import argparse
from typing import Optional

import uvicorn

from ...util.obslog import default_level, setup_root_json_logging


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="rbxrelay web", description="rbxrelay HTTP relay (FastAPI)")
    parser.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=3000, help="Bind port (default: 3000)")
    parser.add_argument("--reload", action="store_true", help="Enable autoreload (dev)")
    parser.add_argument("--log-level", default="", help="Log level (default: $RBXRELAY_LOG_LEVEL or info)")
    args = parser.parse_args(argv)

    level = str(args.log_level or default_level())
    setup_root_json_logging(component="web", level=level)

    try:
        uvicorn.run(
            "rbxrelay.ports.web.app:create_app",
            factory=True,
            host=str(args.host),
            port=int(args.port),
            log_level=level.lower(),
            reload=bool(args.reload),
            log_config=None,
        )
    except (KeyboardInterrupt, SystemExit):
        pass

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
