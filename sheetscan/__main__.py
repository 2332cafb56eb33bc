"""
Module entry point for: python -m sheetscan

Allows running the scanner directly as a module:
    python -m sheetscan scan <files...> [options]
    python -m sheetscan paired --info F --vibe F --stats F [options]
    python -m sheetscan serve [options]
"""

from .cli import cli


def main():
    cli()


if __name__ == "__main__":
    main()
