"""python -m webot"""

from webot.main import cli

cli()
