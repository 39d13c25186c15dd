from .controller import cli

cli()
