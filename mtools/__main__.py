from .mtools import cli

cli()
