"""Named command-line templates expanded by the `template` command."""
