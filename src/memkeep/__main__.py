"""Entry point: python -m memkeep <command>

- serve:                          HTTP server + maintenance scheduler
- maintain [decay|archive|stats|consolidate]
- export [--format F] [--out PATH]
- import <file> [--overwrite] [--project ID]
- rebuild:                        re-derive the index from record files
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

from memkeep.config import MemkeepConfig, load_config
from memkeep.errors import MemkeepError

USAGE = """\
Usage: python -m memkeep <command>
  serve                                    HTTP server + maintenance scheduler
  maintain [decay|archive|stats|consolidate]
  export [--format structured|narrative] [--out PATH]
  import <file> [--overwrite] [--project ID]
  rebuild                                  Rebuild the index from record files"""


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _option(args: list[str], name: str, default: str | None = None) -> str | None:
    """Pop ``name VALUE`` out of ``args``."""
    if name not in args:
        return default
    i = args.index(name)
    if i + 1 >= len(args):
        raise SystemExit(f"{name} needs a value")
    value = args[i + 1]
    del args[i : i + 2]
    return value


def _service(config: MemkeepConfig):
    from memkeep.memory.service import MemoryService

    return MemoryService.from_config(config)


async def _maintain(config: MemkeepConfig, operation: str) -> None:
    service = _service(config)
    report = await service.maintenance(operation)
    print(json.dumps(report.to_dict(), indent=2, ensure_ascii=False, default=str))


async def _export(config: MemkeepConfig, args: list[str]) -> None:
    fmt = _option(args, "--format", "structured")
    out = _option(args, "--out")
    data = await _service(config).export(None, fmt)
    if out:
        Path(out).expanduser().write_bytes(data)
        print(f"Exported to {out} ({len(data)} bytes)")
    else:
        sys.stdout.write(data.decode("utf-8"))


async def _import(config: MemkeepConfig, args: list[str]) -> None:
    project_id = _option(args, "--project")
    overwrite = "--overwrite" in args
    files = [a for a in args if not a.startswith("--")]
    if not files:
        raise SystemExit("import needs a file")
    data = Path(files[0]).expanduser().read_bytes()
    report = await _service(config).import_(data, overwrite, project_id)
    print(json.dumps(report.to_dict(), indent=2, ensure_ascii=False))


async def _rebuild(config: MemkeepConfig) -> None:
    count = await _service(config).rebuild_index()
    print(f"Index rebuilt from {count} records")


def _run_serve(config: MemkeepConfig) -> None:
    from memkeep.daemon import MemkeepDaemon

    asyncio.run(MemkeepDaemon(config).run())


def main() -> None:
    cmd = sys.argv[1] if len(sys.argv) > 1 else ""
    args = sys.argv[2:]

    config = load_config()
    _setup_logging(config.log_level)

    try:
        if cmd == "serve":
            _run_serve(config)
        elif cmd == "maintain":
            asyncio.run(_maintain(config, args[0] if args else "stats"))
        elif cmd == "export":
            asyncio.run(_export(config, args))
        elif cmd == "import":
            asyncio.run(_import(config, args))
        elif cmd == "rebuild":
            asyncio.run(_rebuild(config))
        else:
            print(USAGE)
            sys.exit(1)
    except MemkeepError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
