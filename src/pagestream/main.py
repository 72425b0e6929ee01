from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import replace
from typing import Any

from .client import build_client
from .config import ClientConfig, load_config
from .errors import RequestError, StreamFatal


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="pagestream", description="Paginated listing and stream client")
    p.add_argument("--config", default=None, help="Path to JSON config file. Built-in defaults when omitted")
    p.add_argument(
        "--log-level",
        default=None,
        help="Log level (DEBUG/INFO/WARNING/ERROR). Defaults to env PAGESTREAM_LOG_LEVEL or INFO",
    )

    sub = p.add_subparsers(dest="command", required=True)

    ls = sub.add_parser("list", help="Iterate a listing and print one JSON object per item")
    ls.add_argument("path", help="Listing path, e.g. /r/python/hot")
    ls.add_argument("--limit", type=int, default=None, help="Stop after this many items")
    ls.add_argument("--page-size", type=int, default=None, help="Items requested per page (1-100)")

    st = sub.add_parser("stream", help="Poll a listing and print new items as they appear")
    st.add_argument("path", help="Listing path, e.g. /r/python/new")
    st.add_argument("--max-items", type=int, default=None, help="Exit after printing this many items")
    st.add_argument("--poll-interval", type=float, default=None, help="Seconds between polls when idle")
    return p


def _resolve_log_level(value: str | None) -> int:
    v = (value or "").strip().upper()
    if not v:
        return logging.INFO
    level = logging.getLevelNamesMapping().get(v)
    if isinstance(level, int):
        return level
    return logging.INFO


def _item_json(item: Any) -> dict[str, Any]:
    out: dict[str, Any] = {
        "identifier": item.identifier,
        "order_key": item.order_key,
    }
    kind = getattr(item, "kind", None)
    if kind:
        out["kind"] = kind
    data = getattr(item, "data", None)
    if data is not None:
        out["data"] = data
    return out


def _emit(item: Any) -> None:
    sys.stdout.write(json.dumps(_item_json(item), ensure_ascii=False, default=str) + "\n")
    sys.stdout.flush()


def _run_list(args: argparse.Namespace, config: ClientConfig, logger: logging.Logger) -> int:
    options = config.listing
    if args.limit is not None:
        options = replace(options, max_items=args.limit)
    if args.page_size is not None:
        options = replace(options, page_size=args.page_size)

    client = build_client(config)
    listing = client.listing(args.path, options=options)
    try:
        for item in listing:
            _emit(item)
    except RequestError as e:
        logger.error("list failed: path=%s items=%d error=%s: %s", args.path, listing.items_yielded, type(e).__name__, e)
        return 1
    logger.info("list done: path=%s items=%d pages=%d", args.path, listing.items_yielded, listing.pages_fetched)
    return 0


def _run_stream(args: argparse.Namespace, config: ClientConfig, logger: logging.Logger) -> int:
    options = config.stream
    if args.poll_interval is not None:
        options = replace(options, poll_interval_seconds=args.poll_interval, burst_interval_seconds=None)

    client = build_client(config)
    printed = 0
    with client.stream(args.path, options=options) as poller:
        try:
            for item in poller:
                _emit(item)
                printed += 1
                if args.max_items is not None and printed >= args.max_items:
                    break
        except StreamFatal as e:
            logger.error("stream failed: path=%s printed=%d error=%s", args.path, printed, e)
            return 1
        except KeyboardInterrupt:
            logger.info("stream interrupted: path=%s printed=%d", args.path, printed)
    logger.info("stream done: path=%s printed=%d", args.path, printed)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    env_log_level = os.environ.get("PAGESTREAM_LOG_LEVEL")
    log_level = _resolve_log_level(args.log_level or env_log_level)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )
    logger = logging.getLogger("pagestream")

    config = load_config(args.config) if args.config else ClientConfig()
    logger.info(
        "pagestream start: command=%s path=%s base_url=%s auth=%s",
        args.command,
        args.path,
        config.http.base_url,
        "token" if config.auth.token_env else "anonymous",
    )

    if args.command == "list":
        return _run_list(args, config, logger)
    return _run_stream(args, config, logger)


if __name__ == "__main__":
    raise SystemExit(main())
