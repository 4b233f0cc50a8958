"""Pipeline stages run by the CLI."""
