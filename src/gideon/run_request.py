"""Run one Gideon request on an image file and print the JSON response to stdout.

Usage: python -m src.gideon.run_request IMAGE [--action ACTION] [--question TEXT] [--task TEXT]
                                              [--latitude LAT --longitude LON]
"""
import argparse
import asyncio
import base64
import json
import logging
import mimetypes
import sys

from src.gideon.dispatcher import ACTIONS, DispatchError, dispatch


def build_request(args: argparse.Namespace) -> dict:
    mime_type = mimetypes.guess_type(args.image)[0] or "image/jpeg"
    with open(args.image, "rb") as f:
        encoded = base64.b64encode(f.read()).decode("ascii")
    raw = {"image": f"data:{mime_type};base64,{encoded}"}
    for key in ("question", "task", "latitude", "longitude"):
        value = getattr(args, key)
        if value is not None:
            raw[key] = value
    return raw


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("image")
    parser.add_argument("--action", choices=ACTIONS)
    parser.add_argument("--question")
    parser.add_argument("--task")
    parser.add_argument("--latitude", type=float)
    parser.add_argument("--longitude", type=float)
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        result = asyncio.run(dispatch(build_request(args), args.action))
    except DispatchError as exc:
        print(json.dumps(exc.to_dict(), indent=2))
        return 1
    print(json.dumps(result.model_dump(exclude_none=True), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
