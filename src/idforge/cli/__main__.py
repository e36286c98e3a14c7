"""CLI entry point for idforge.cli module.

Enables execution via: python -m idforge.cli <command> [OPTIONS]

Commands:
    recover_batches  Close batches orphaned by a crashed process
    watch_progress   Follow generation progress for a username
"""

import sys

from idforge.cli import recover_batches, watch_progress

COMMANDS = {
    "recover_batches": recover_batches.main,
    "watch_progress": watch_progress.main,
}


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if not argv or argv[0] not in COMMANDS:
        print(f"usage: python -m idforge.cli {{{','.join(COMMANDS)}}} [OPTIONS]", file=sys.stderr)
        return 1
    return COMMANDS[argv[0]](argv[1:])


if __name__ == "__main__":
    raise SystemExit(main())
