"""Command line entry point for nestlambda."""

import click

from nestlambda import __version__
from nestlambda.cli.commands.deploy import (
    build,
    check,
    deploy,
    publish,
    remove,
    status,
)


@click.group(name="nestlambda")
@click.version_option(version=__version__, prog_name="nestlambda")
def main() -> None:
    """Deploy NestJS applications to AWS Lambda.

    Runs the pipeline checking -> loading -> building -> publishing ->
    reporting for one target, either as a zip bundle or a container image.

    Example:

        nestlambda check --target dev

        nestlambda deploy --target prod
    """


main.add_command(check)
main.add_command(build)
main.add_command(publish)
main.add_command(deploy)
main.add_command(status)
main.add_command(remove)


if __name__ == "__main__":
    main()
