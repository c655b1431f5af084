# Author: PB and Claude
# Date: 2026-10-18
# License: (c) HRDAG, 2026, GPL-2 or newer
#
# ---
# src/ioserv/cli.py

"""
ioserv Command Line Interface

Thin wrapper around the operations module. Flags follow the classic
single-letter layout; every failure exits with a negative errno-style code.
"""

import errno
from pathlib import Path
import sys
import tomllib

import click

from ioserv import config as config_module
from ioserv import operations
from ioserv.daemon import background
from ioserv.errors import IOServError
from ioserv.parse import parse_numeric_id

USAGE = """Usage: {prog}
 -a addr:port:family  - creates a node with given network address
 -r addr:port:family  - adds a route to the given node
 -j                   - join the network
                        become a fair node which may store data from the other nodes
 -t                   - use the key-value (SQLite) IO storage backend
 -f num_bits          - use file backend with provided number of bits to generate subdir (8 by default)
 -d root              - root directory to load/store the objects
 -W file              - write given file to the network storage
 -s                   - request stats from all connected nodes
 -R file              - read given file from the network into the local storage
 -H file              - read a history for given file into the local storage
 -T hash              - hash to use as a transformation function
 -i id                - node's ID (zero by default)
 -I id                - transaction id
 -c cmd               - execute given command on the remote node
 -L file              - lookup a storage which hosts given file
 -l log               - log file. Default: disabled
 -w timeout           - wait timeout in seconds used to wait for content sync.
 ...                  - parameters can be repeated multiple times
                        each time they correspond to the last added node
 -D                   - go background
 -m mask              - log events mask
 -N num               - number of IO threads
 -P num               - maximum number of pending write transactions opened by single thread
 -O offset            - read/write offset in the file
 -S size              - read/write transaction size
 -u file              - unlink file
 --config-file path   - TOML file with defaults for the options above
"""


def fail(message: str, code: int) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(code)


def parse_number(value: str, what: str) -> int:
    """strtoul-style number: decimal, 0x.. hex or 0o.. octal. Negatives are refused."""
    try:
        number = int(value, 0)
    except ValueError:
        fail(f"Invalid {what} '{value}'", -errno.EINVAL)
    if number < 0:
        fail(f"Invalid {what} '{value}': must not be negative", -errno.EINVAL)
    return number


class IOServCommand(click.Command):
    """Bad flags print the usage text and exit -1, like -h."""

    def parse_args(self, ctx, args):
        try:
            return super().parse_args(ctx, args)
        except click.UsageError as e:
            click.echo(f"Error: {e.format_message()}", err=True)
            click.echo(USAGE.format(prog=ctx.info_name), err=True)
            sys.exit(-1)


def print_result(result) -> None:
    if result.ok:
        click.echo(result.to_json())
    else:
        click.echo(f"{result.kind.value} failed: {result.error}", err=True)


@click.command(cls=IOServCommand, context_settings={"help_option_names": []})
@click.option("-a", "addr", metavar="addr:port:family", help="Local network address")
@click.option("-r", "remotes", multiple=True, metavar="addr:port:family", help="Remote node (repeatable)")
@click.option("-j", "join", is_flag=True, help="Join the network")
@click.option("-t", "use_kv", is_flag=True, help="Use the key-value backend")
@click.option("-f", "bits", type=int, help="File backend subdirectory bits")
@click.option("-d", "root", help="Backend root directory")
@click.option("-W", "write", metavar="file", help="Write file to the network")
@click.option("-R", "read", metavar="file", help="Read file from the network")
@click.option("-H", "history", metavar="file", help="Read file history from the network")
@click.option("-u", "remove", metavar="file", help="Remove file from the network")
@click.option("-T", "transforms", multiple=True, metavar="hash", help="Transform (repeatable)")
@click.option("-i", "node_id", metavar="id", help="Node id (hex)")
@click.option("-I", "trans_id", metavar="id", help="Transaction id (hex)")
@click.option("-c", "command", metavar="cmd", help="Command to execute on the remote node")
@click.option("-L", "lookup", metavar="file", help="Lookup the node hosting file")
@click.option("-s", "stat", is_flag=True, help="Request stats from connected nodes")
@click.option("-l", "log_file", metavar="log", help="Log file")
@click.option("-w", "wait_timeout", type=int, help="Wait timeout in seconds")
@click.option("-D", "daemon", is_flag=True, help="Go background")
@click.option("-m", "log_mask", metavar="mask", help="Log events mask")
@click.option("-N", "io_threads", type=int, help="Number of IO threads")
@click.option("-P", "max_pending", type=int, help="Max pending writes per thread")
@click.option("-O", "offset", metavar="offset", default="0", help="Read/write offset")
@click.option("-S", "size", metavar="size", default="0", help="Read/write size")
@click.option("-h", "show_help", is_flag=True, help="Show usage")
@click.option(
    "--config-file",
    type=click.Path(path_type=Path),
    help="TOML config file with defaults",
)
def cli(
    addr, remotes, join, use_kv, bits, root, write, read, history, remove,
    transforms, node_id, trans_id, command, lookup, stat, log_file, wait_timeout,
    daemon, log_mask, io_threads, max_pending, offset, size, show_help, config_file,
) -> None:
    """Storage cluster node."""
    if show_help:
        click.echo(USAGE.format(prog=click.get_current_context().info_name), err=True)
        sys.exit(-1)

    offset = parse_number(offset, "offset")
    size = parse_number(size, "size")

    node_overrides = {
        key: value for key, value in {
            "addr": addr,
            "id": node_id,
            "wait_timeout": wait_timeout,
            "log_mask": parse_number(log_mask, "log mask") if log_mask else None,
            "max_pending": max_pending,
            "io_threads": io_threads,
        }.items() if value is not None
    }
    if join:
        node_overrides["join"] = True
    backend_overrides = {}
    if root:
        backend_overrides["root"] = root
    if use_kv:
        backend_overrides["kind"] = "kv"
    if bits is not None:
        backend_overrides["bits"] = bits
    overrides = {"node": node_overrides, "backend": backend_overrides}
    if log_file:
        overrides["log"] = {"file": log_file}

    try:
        settings = config_module.load_config(config_file, overrides)
    except FileNotFoundError as e:
        fail(str(e), -errno.ENOENT)
    except tomllib.TOMLDecodeError as e:
        fail(f"Invalid config file {config_file}: {e}", -errno.EINVAL)

    settings.remotes.extend(remotes)
    settings.transforms.extend(transforms)
    errors, _ = settings.validate()
    if errors:
        fail("; ".join(errors), -errno.EINVAL)

    try:
        trans = parse_numeric_id(trans_id) if trans_id else None
        node_config, remote_addrs, chain = operations.prepare(settings)
    except IOServError as e:
        fail(str(e), e.code)
    except OSError as e:
        fail(f"Failed to open log file {settings.log_file}: {e.strerror}", -(e.errno or errno.EIO))

    if node_config.log_handler is None:
        click.echo("No log file found, logging will be disabled.", err=True)

    queued = operations.build_requests(
        write=write,
        read=read,
        history=history,
        remove=remove,
        command=command,
        lookup=lookup,
        stat=stat,
        trans_id=trans,
        offset=offset,
        size=size,
    )

    try:
        if daemon:
            background()
        node = operations.bootstrap(node_config, remote_addrs, chain)
    except IOServError as e:
        fail(str(e), e.code)

    results = operations.dispatch(node, queued)
    for result in results:
        print_result(result)
    rc = operations.first_failure(results)

    if node.joined:
        node.serve_forever()
    else:
        node.destroy()

    if rc == 0:
        click.echo("Successfully executed given command.")
    sys.exit(rc)


def main() -> None:
    cli(prog_name="ioserv")
