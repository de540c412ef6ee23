"""Process-wide plumbing shared by the API and the CLI."""
