"""Allow `python -m oae_messaging` to invoke the CLI entry-point."""

from .cli import app


def main() -> None:
    app(prog_name="oae-messaging")


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
