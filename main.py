"""Scene tagger — API server launcher and one-shot describe command."""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

from pydantic import ValidationError

from scene_tagger.config import build_generator, load_config
from scene_tagger.host import HostBridge
from scene_tagger.llm import EchoGenerator
from scene_tagger.pipeline import describe
from scene_tagger.routes import HostState
from scene_tagger.storage import SettingsStore


def _serve(args: argparse.Namespace) -> None:
    import uvicorn

    config = load_config()
    # The app module builds its config from the environment at import time
    if args.data_dir:
        os.environ["DATA_DIR"] = str(args.data_dir.resolve())
    host = args.host or config.host
    port = args.port or config.port
    print(f"Starting API on http://localhost:{port} ...")
    uvicorn.run("scene_tagger.app:app", host=host, port=port, reload=args.reload)


def _describe(args: argparse.Namespace) -> int:
    config = load_config()
    store = SettingsStore(args.data_dir or config.data_dir)
    generator = EchoGenerator() if args.echo else build_generator(config)

    try:
        state = HostState.model_validate_json(args.state.read_text())
    except (OSError, UnicodeDecodeError) as e:
        print(f"{args.state}: cannot read state file: {e}", file=sys.stderr)
        return 2
    except ValidationError as e:
        print(f"{args.state}: invalid host state ({e.error_count()} errors)", file=sys.stderr)
        return 2
    host = HostBridge.from_state(
        context=state.context,
        power_user=state.power_user,
        user_avatar=state.user_avatar,
        avatars=state.avatars,
        generate_raw=generator.generate_raw,
        generate_quiet_prompt=generator.generate_quiet_prompt,
    )

    settings = asyncio.run(describe(host, store, args.style or config.prompt_style))
    if settings is None:
        print("No descriptions generated; settings unchanged.", file=sys.stderr)
        return 1
    print(json.dumps(settings.model_dump(), indent=2))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Scene tagger")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Settings storage directory (default: $DATA_DIR or ./data)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.add_argument("--reload", action="store_true", help="Reload on code changes")

    desc = sub.add_parser("describe", help="Generate descriptions for a host state file")
    desc.add_argument("state", type=Path,
                      help="JSON file with context, power_user, user_avatar, avatars")
    desc.add_argument("--style", choices=["tags", "structured"], default=None)
    desc.add_argument("--echo", action="store_true",
                      help="Echo prompts instead of calling the LLM backend")

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "serve":
        _serve(args)
    else:
        sys.exit(_describe(args))


if __name__ == "__main__":
    main()
