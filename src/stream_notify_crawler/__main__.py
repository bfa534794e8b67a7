"""Run the crawler and its status API: ``python -m stream_notify_crawler``."""

from __future__ import annotations

import argparse

import uvicorn


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the stream notify crawler.")
    parser.add_argument("--host", default="0.0.0.0", help="Status API bind address.")
    parser.add_argument("--port", type=int, default=8080, help="Status API port.")
    args = parser.parse_args()

    uvicorn.run(
        "stream_notify_crawler.api.main:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
