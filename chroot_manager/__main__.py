"""
Manage a Debian chroot jail.

Commands:
  create      Create the chroot jail using debootstrap.
  connect     Mount dev, proc, sys, tmp and devpts into the jail, set up X
              access and enter the jail. The mounts are removed when the
              session ends. With --daemon the session runs under strace and
              every process started inside the jail leaves a system call log
              named <program>_<pid>.log in the trace directory.
  disconnect  Unmount whatever is still mounted in the jail.
  status      Show the mounts inside the jail.
  install     Install chroot_manager, its man page and bash completion.
  uninstall   Remove what install put in place.
  help        Show this message.

Commands other than status and help must be run as root. When run as a
regular user they re-execute themselves through `sudo -E`.
"""

import argparse
import logging
import os
import sys

import chroot_manager
from chroot_manager import commands

COMMANDS = {
    'create': commands.create,
    'connect': commands.connect,
    'disconnect': commands.disconnect,
    'status': commands.status,
    'install': commands.install,
    'uninstall': commands.uninstall,
}

PRIVILEGED_COMMANDS = ('create', 'connect', 'disconnect', 'install',
                       'uninstall')

# Set in the environment of the re-executed process so that we don't loop
# if sudo doesn't make us root.
ELEVATION_MARKER = '_ENV_PRESERVED'


def build_parser(config):
  parser = argparse.ArgumentParser(
      prog='chroot_manager', description=__doc__,
      formatter_class=argparse.RawDescriptionHelpFormatter)
  parser.add_argument('--version', action='version',
                      version=chroot_manager.VERSION)
  parser.add_argument('-c', '--config', help='Path to config file')
  parser.add_argument('--dump-config', action='store_true',
                      help='Dump default config and exit')

  for key, value in config.items():
    helpstr = chroot_manager.VARDOCS.get(key, None)
    # NOTE(josh): argparse store_true isn't what we want here because we want
    # to distinguish between "not specified" = "default" and "specified".
    # A flag taking an optional value would swallow the command that follows.
    if isinstance(value, bool):
      parser.add_argument('--' + key.replace('_', '-'), default=None,
                          action=argparse.BooleanOptionalAction, help=helpstr)
    elif isinstance(value, (str, int, float)) or value is None:
      parser.add_argument('--' + key.replace('_', '-'), help=helpstr)
    # NOTE(josh): argparse behavior is that if the flag is not specified on
    # the command line the value will be None, whereas if it's specified with
    # no arguments then the value will be an empty list. This exactly what we
    # want since we can ignore `None` values.
    elif isinstance(value, (list, tuple)):
      if value:
        argtype = type(value[0])
      else:
        argtype = None
      parser.add_argument('--' + key.replace('_', '-'), nargs='*',
                          type=argtype, help=helpstr)

  parser.add_argument('command', nargs='?',
                      choices=sorted(COMMANDS) + ['help'],
                      help='what to do, see above')
  return parser


def elevate(argv, environ=None, execvpe=os.execvpe):
  """
  Re-execute this program as root through `sudo -E`, preserving the
  environment. Does not return unless we already tried that once.
  """
  if environ is None:
    environ = os.environ

  if environ.get(ELEVATION_MARKER):
    raise chroot_manager.PrivilegeError(
        "Still not root after re-executing through sudo")

  env = dict(environ)
  env[ELEVATION_MARKER] = '1'
  sudo_argv = ['sudo', '-E', sys.executable, '-m', 'chroot_manager'] \
      + list(argv)
  print("Forcing re-exec with preserved environment variables...")
  execvpe('sudo', sudo_argv, env)


def main(argv=None):
  if argv is None:
    argv = sys.argv[1:]

  config = chroot_manager.Config().as_dict()
  parser = build_parser(config)
  args = parser.parse_args(argv)

  if args.dump_config:
    chroot_manager.dump_config(sys.stdout)
    return 0

  if args.command is None:
    parser.print_usage()
    return 1

  if args.command == 'help':
    parser.print_help()
    return 0

  if args.command in PRIVILEGED_COMMANDS and os.geteuid() != 0:
    try:
      elevate(argv)
    except (chroot_manager.PrivilegeError, OSError) as ex:
      sys.stderr.write('Error: {}\n'.format(ex))
      return 1

  unknownkeys = []
  if args.config:
    fileconfig = chroot_manager.load_config(args.config)
    unknownkeys = chroot_manager.get_unknown_keys(fileconfig)
    for key in config:
      if key in fileconfig:
        config[key] = fileconfig[key]

  for key, value in vars(args).items():
    if value is not None and key in config:
      config[key] = value

  config = chroot_manager.Config(**config)
  chroot_manager.setup_logging(config)

  if unknownkeys:
    logging.warning("Unrecognized config variables: %s",
                    ", ".join(unknownkeys))

  try:
    result = COMMANDS[args.command](config)
  except chroot_manager.ChrootManagerError as ex:
    logging.error("%s", ex)
    return 1

  if args.command == 'connect' and result:
    return result
  return 0


if __name__ == '__main__':
  sys.exit(main())
