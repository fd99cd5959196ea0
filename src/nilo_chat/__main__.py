"""Allow `python -m nilo_chat` to invoke the CLI entry-point."""

from typer.main import get_command

from .cli import app


def main() -> None:
    cmd = get_command(app)
    cmd.main(prog_name="nilo-chat")


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
