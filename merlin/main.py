"""Command-line entrypoint for Merlin."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from merlin.config import DEVICES, GiB, RuntimeConfig
from merlin.engine import VisionLanguageRuntime
from merlin.lfm.weights import ProgressEvent
from merlin.model_download import DEFAULT_MODEL_ID


_LOG_LEVELS = ["critical", "error", "warning", "info", "debug"]


def _add_cache_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--cache-dir", type=Path, help="Directory holding cached model files")
    parser.add_argument(
        "--log-level",
        choices=_LOG_LEVELS,
        default="warning",
        help="Logging verbosity",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Local vision-language inference")
    subparsers = parser.add_subparsers(dest="command")

    generate = subparsers.add_parser("generate", help="Generate a reply to a prompt")
    generate.add_argument("prompt", help="User message")
    generate.add_argument(
        "--model",
        default=DEFAULT_MODEL_ID,
        help="Registry id, Hub repo id, base URL, or local directory",
    )
    generate.add_argument("--revision", help="Hub revision to load")
    generate.add_argument(
        "--image",
        action="append",
        default=[],
        help="Image path, URL, or data URL (repeatable)",
    )
    generate.add_argument("--system", help="Optional system message")
    generate.add_argument("--max-new-tokens", type=int, default=256, help="Tokens to generate")
    generate.add_argument("--device", choices=DEVICES, default="gpu", help="Execution device")
    generate.add_argument(
        "--quantization",
        default=None,
        help="Quantization tag (e.g. q4, q8, fp16; 'none' for full precision). Defaults to the model's own",
    )
    generate.add_argument(
        "--strict-image-tokens",
        action="store_true",
        help="Fail instead of warning when image markers and embeddings disagree",
    )
    generate.add_argument("--stream", action="store_true", help="Print tokens as they are generated")
    _add_cache_args(generate)

    cache = subparsers.add_parser("cache", help="Inspect or clear the model cache")
    cache_sub = cache.add_subparsers(dest="cache_command")
    _add_cache_args(cache_sub.add_parser("info", help="Show cache usage"))
    _add_cache_args(cache_sub.add_parser("clear", help="Delete every cached model file"))

    return parser


def _create_runtime_config(args: argparse.Namespace) -> RuntimeConfig:
    return RuntimeConfig(
        cache_dir=getattr(args, "cache_dir", None),
        device=getattr(args, "device", "gpu"),
        quantization=getattr(args, "quantization", None),
        max_new_tokens=getattr(args, "max_new_tokens", 256),
        strict_image_tokens=getattr(args, "strict_image_tokens", False),
    )


def _print_progress(event: ProgressEvent) -> None:
    print(f"[{event.progress:3d}%] {event.status} {event.file}", file=sys.stderr, flush=True)


def _handle_generate(args: argparse.Namespace) -> None:
    if args.max_new_tokens <= 0:
        raise SystemExit("max-new-tokens must be positive")

    messages: List[Dict[str, str]] = []
    if args.system:
        messages.append({"role": "system", "content": args.system})
    messages.append({"role": "user", "content": args.prompt})

    def on_token(text: str, token_id: int) -> bool:
        print(text, end="", flush=True)
        return False

    with VisionLanguageRuntime(_create_runtime_config(args)) as runtime:
        runtime.load(args.model, revision=args.revision, progress_callback=_print_progress)
        result = runtime.generate_result(
            messages,
            max_new_tokens=args.max_new_tokens,
            images=args.image,
            on_token=on_token if args.stream else None,
        )

    if args.stream:
        print()
    else:
        print(result.text)
    metrics = result.metrics
    print(
        f"{result.finish_reason}: {metrics.output_tokens} tokens in {metrics.elapsed_s:.2f}s "
        f"({metrics.tokens_per_second:.1f} tok/s)",
        file=sys.stderr,
    )


def _handle_cache(args: argparse.Namespace, parser: argparse.ArgumentParser) -> None:
    with VisionLanguageRuntime(_create_runtime_config(args)) as runtime:
        if args.cache_command == "info":
            info = runtime.get_cache_info()
            print(f"location:  {runtime.cache.directory}")
            print(f"used:      {info.used / GiB:.2f} GB")
            print(f"available: {info.available / GiB:.2f} GB")
        elif args.cache_command == "clear":
            cleared = runtime.clear_model_cache()
            print("cache cleared" if cleared else "cache already empty")
        else:
            parser.print_help()


def main(argv: Optional[List[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is not None:
        logging.basicConfig(
            level=getattr(logging, getattr(args, "log_level", "warning").upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

    if args.command == "generate":
        _handle_generate(args)
    elif args.command == "cache":
        _handle_cache(args, parser)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
