import argparse
import os
import signal
import sys
import traceback

from . import pool
from .config import Config
from .entropy import wipe
from .errors import KeypoolError
from .host import Host
from .keystore import READ_WRITE, Keystore
from .util import CLIProgressHandler, parse_size_arg


def _context(args):
    progress = CLIProgressHandler()
    host = Host.system()
    config = Config.load()
    return host, config, Keystore(host, config, progress), progress


def cmd_newks(args):
    host, config, keystore, progress = _context(args)
    keystore.create(config.keystore_size, iterations=args.iterations)


def cmd_openks(args):
    host, config, keystore, progress = _context(args)
    session = keystore.begin(READ_WRITE)
    session.keep()
    progress.notify('The keystore is mounted on {}'.format(session.mount_point))
    progress.notify('Lock it again with: keypool closeks')


def cmd_closeks(args):
    host, config, keystore, progress = _context(args)
    if not keystore.is_open():
        progress.notify('The keystore is not open')
    keystore.recover_session().close()


def cmd_init(args):
    host, config, keystore, progress = _context(args)
    pool.init(host, keystore, args.devices, progress=progress)


def cmd_attach(args):
    host, config, keystore, progress = _context(args)
    pool.attach(host, keystore, args.devices, progress=progress)


def cmd_detach(args):
    host, config, keystore, progress = _context(args)
    pool.detach(host, args.devices, progress=progress)


def cmd_enable(args):
    host, config, keystore, progress = _context(args)
    pool.set_auto_attach(host, keystore, args.ids, True, progress=progress)


def cmd_disable(args):
    host, config, keystore, progress = _context(args)
    pool.set_auto_attach(host, keystore, args.ids, False, progress=progress)


def cmd_wipe(args):
    host, config, keystore, progress = _context(args)
    devpath = args.device
    if not os.path.isabs(devpath):
        devpath = '/dev/' + devpath
    written = wipe(
        host.catalog, host.random, devpath, args.size, progress=progress)
    progress.notify('Wrote {} bytes to {}'.format(written, devpath))


def cmd_status(args):
    host, config, keystore, progress = _context(args)
    pool.status(host, keystore, progress=progress)


def cmd_recover(args):
    host, config, keystore, progress = _context(args)
    path = pool.recover(host, config, args.device, progress=progress)
    progress.notify('Restored {}'.format(path))


def _exit_on_signal(signum, frame):
    # Unwinds like any exception, so open sessions get torn down
    sys.exit(128 + signum)


def make_parser():
    parser = argparse.ArgumentParser(
        prog='keypool',
        description='Encrypted disks unlocked with keys from a keystore')
    parser.add_argument(
        '--debug', action='store_true', help='Show tracebacks of failures')
    commands = parser.add_subparsers(dest='command', metavar='command')

    sp_newks = commands.add_parser('newks', help='Create the keystore')
    sp_newks.add_argument(
        'iterations', type=int, nargs='?',
        help='PBKDF2 iterations, instead of a benchmarked default')
    sp_newks.set_defaults(action=cmd_newks)

    sp_openks = commands.add_parser(
        'openks', help='Mount the keystore read-write and leave it open')
    sp_openks.set_defaults(action=cmd_openks)

    sp_closeks = commands.add_parser(
        'closeks', help='Unmount and lock the keystore')
    sp_closeks.set_defaults(action=cmd_closeks)

    sp_init = commands.add_parser(
        'init', help='Enroll unpartitioned disks')
    sp_init.add_argument('devices', nargs='+', metavar='device')
    sp_init.set_defaults(action=cmd_init)

    sp_attach = commands.add_parser(
        'attach', help='Attach disks, all enrolled ones by default')
    sp_attach.add_argument('devices', nargs='*', metavar='device')
    sp_attach.set_defaults(action=cmd_attach)

    sp_detach = commands.add_parser(
        'detach', help='Detach disks, all attached ones by default')
    sp_detach.add_argument('devices', nargs='*', metavar='device')
    sp_detach.set_defaults(action=cmd_detach)

    sp_disable = commands.add_parser(
        'disable', help='Leave disks out of attach without arguments')
    sp_disable.add_argument('ids', nargs='+', metavar='id')
    sp_disable.set_defaults(action=cmd_disable)

    sp_enable = commands.add_parser(
        'enable', help='Undo disable')
    sp_enable.add_argument('ids', nargs='+', metavar='id')
    sp_enable.set_defaults(action=cmd_enable)

    sp_wipe = commands.add_parser(
        'wipe', help='Overwrite a device with pseudorandom data')
    sp_wipe.add_argument('device')
    sp_wipe.add_argument(
        'size', type=parse_size_arg, nargs='?',
        help='only overwrite this much at each end;'
        ' MiB, or bkmgtpe suffixes in powers of 1024 units')
    sp_wipe.set_defaults(action=cmd_wipe)

    sp_status = commands.add_parser(
        'status', help='List enrolled disks')
    sp_status.set_defaults(action=cmd_status)

    sp_recover = commands.add_parser(
        'recover', help='Restore a lost keystore from a disk\'s backup')
    sp_recover.add_argument('device')
    sp_recover.set_defaults(action=cmd_recover)

    sp_help = commands.add_parser('help', help='Show this help')
    sp_help.set_defaults(action=None)

    return parser


def main(argv=None):
    try:
        assert False
    except AssertionError:
        pass
    else:
        print('Assertions need to be enabled', file=sys.stderr)
        return 2

    parser = make_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_usage(sys.stderr)
        return 2
    if args.command == 'help':
        parser.print_help()
        return 0

    for signum in (signal.SIGHUP, signal.SIGTERM):
        signal.signal(signum, _exit_on_signal)

    progress = CLIProgressHandler()
    try:
        return args.action(args)
    except KeypoolError as err:
        if args.debug:
            traceback.print_exc()
        progress.notify_error(str(err), err)
        return 1
    except KeyboardInterrupt:
        return 128 + signal.SIGINT


def script_main():
    sys.exit(main())


if __name__ == '__main__':
    script_main()
