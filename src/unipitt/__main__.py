"""Allow ``python -m unipitt``."""

from unipitt._cli import cli

if __name__ == "__main__":
    cli(prog_name="unipitt")
