"""Allow ``python -m carrier``; detached launches re-enter through here."""

from carrier.cli import app

if __name__ == "__main__":
    app()
