"""
Manage a debootstrap'ed chroot jail: bind the host's /dev, /proc, /sys and
/tmp into it, enter it, and optionally record every system call made inside
the jail with strace.
"""

import inspect
import io
import logging
import os
import pprint
import textwrap

VERSION = '0.2.0'


class ChrootManagerError(Exception):
  """Base class for errors which should terminate the current command."""


class MissingDependencyError(ChrootManagerError):
  """A required external program is not installed."""


class PrivilegeError(ChrootManagerError):
  """A command which modifies the system was run without root."""


class PreconditionError(ChrootManagerError):
  """The jail is not in the state the command requires."""


class MountError(ChrootManagerError):
  """A filesystem could not be mounted into the jail."""


class BootstrapError(ChrootManagerError):
  """debootstrap failed to populate the jail."""


class XAccessError(ChrootManagerError):
  """X server access could not be granted."""


class TraceError(ChrootManagerError):
  """The traced session could not be started."""


def serialize(obj):
  """
  Return a serializable representation of the object. If the object has an
  `as_dict` method, then it will call and return the output of that method.
  Otherwise return the object itself.
  """
  if hasattr(obj, 'as_dict'):
    fun = getattr(obj, 'as_dict')
    if callable(fun):
      return fun()

  return obj


class ConfigObject(object):
  """
  Provides simple serialization to a dictionary based on the assumption that
  all args in the __init__() function are fields of this object.
  """

  @classmethod
  def get_field_names(cls):
    """
    The order of fields in the tuple representation is the same as the order
    of the fields in the __init__ function
    """

    # NOTE(josh): args[0] is `self`
    return inspect.getfullargspec(cls.__init__).args[1:]

  def as_dict(self):
    """
    Return a dictionary mapping field names to their values only for fields
    specified in the constructor
    """
    return {field: serialize(getattr(self, field))
            for field in self.get_field_names()}


def get_default(obj, default):
  """
  If obj is not `None` then return it. Otherwise return default.
  """
  if obj is None:
    return default

  return obj


DEFAULT_ROOTFS = '/var/chroot'
DEFAULT_MIRROR = 'http://deb.debian.org/debian'
DEFAULT_SUITE = 'stable'
DEFAULT_LOG_FILE = '/var/log/chroot_manager.log'
DEFAULT_TRACE_DIRNAME = 'chroot_daemon_logs'
DEFAULT_TRACE_PREFIX = 'chroot_daemon.log'

# Programs whose traces are just noise from the interactive shell
DEFAULT_IGNORE = ['bash', 'sh', 'ls', 'cat', 'echo', 'grep', 'mount', 'umount']


class Config(ConfigObject):
  """
  Everything an invocation of the tool needs to know. One instance is built
  by the command line front end and handed to every operation.
  """

  def __init__(self,
               rootfs=None,
               mirror=None,
               suite=None,
               log_file=None,
               trace_dir=None,
               trace_prefix=None,
               ignore=None,
               install_prefix=None,
               completion_dir=None,
               verbose=None,
               daemon=None,
               **_):
    self.rootfs = get_default(rootfs, DEFAULT_ROOTFS)
    self.mirror = get_default(mirror, DEFAULT_MIRROR)
    self.suite = get_default(suite, DEFAULT_SUITE)
    self.log_file = get_default(log_file, DEFAULT_LOG_FILE)
    self.trace_dir = get_default(
        trace_dir, os.path.join(os.getcwd(), DEFAULT_TRACE_DIRNAME))
    self.trace_prefix = get_default(trace_prefix, DEFAULT_TRACE_PREFIX)
    self.ignore = list(get_default(ignore, DEFAULT_IGNORE))
    self.install_prefix = get_default(install_prefix, '/usr/local')
    self.completion_dir = get_default(completion_dir,
                                      '/etc/bash_completion.d')
    self.verbose = bool(verbose)
    self.daemon = bool(daemon)


VARDOCS = {
    "rootfs": "The directory holding the chroot jail",
    "mirror": "Debian mirror passed to debootstrap by `create`",
    "suite": "Debian suite (codename) passed to debootstrap by `create`",
    "log_file":
    """
Every message, including debug messages, is appended to this file
together with its severity and a timestamp.
""",
    "trace_dir":
    """
Directory where strace writes one log per traced process when
`connect` runs in daemon mode. Defaults to ./chroot_daemon_logs
""",
    "trace_prefix":
    """
strace writes each process's log to <trace_dir>/<trace_prefix>.<pid>.
After the session these are renamed to <program>_<pid>.log
""",
    "ignore":
    """
Traces of programs with these basenames are deleted after the session
instead of being renamed.
""",
    "install_prefix":
    "`install` puts the launcher in <prefix>/bin and the man page in "
    "<prefix>/share/man/man1",
    "completion_dir": "`install` puts the bash completion file here",
    "verbose": "Print debug messages to the console as well as the log file",
    "daemon":
    """
When used with `connect`, run the chroot session under strace and keep
a system call log for every process started inside the jail.
""",
}


def load_config(config_path, config=None):
  """
  Execute the python config file at ``config_path`` and return the resulting
  dictionary of variables, starting from ``config`` if given.
  """
  if config is None:
    config = {}

  with io.open(config_path, encoding='utf8') as infile:
    # pylint: disable=W0122
    exec(infile.read(), config)

  return config


def get_unknown_keys(config):
  """Return the keys of the config dictionary which are not Config fields."""
  knownkeys = Config.get_field_names()
  unknownkeys = []
  for key in config:
    if key.startswith('_'):
      continue

    if key in knownkeys:
      continue

    unknownkeys.append(key)
  return unknownkeys


def dump_config(outfile):
  """
  Dump the default configuration to ``outfile``.
  """

  config = Config().as_dict()

  ppr = pprint.PrettyPrinter(indent=2)
  for key in Config.get_field_names():
    helptext = VARDOCS.get(key, None)
    if helptext:
      for line in textwrap.wrap(helptext, 78):
        outfile.write('# ' + line + '\n')
    value = config[key]
    outfile.write('{} = {}\n\n'.format(key, ppr.pformat(value)))


def setup_logging(config, stream=None):
  """
  Send log records to the console and append them to ``config.log_file``.
  Debug records only reach the console in verbose mode.
  """
  format_str = '[%(levelname)s] %(asctime)s %(message)s'
  formatter = logging.Formatter(format_str, datefmt='%Y-%m-%d %H:%M:%S')

  root = logging.getLogger()
  for handler in list(root.handlers):
    root.removeHandler(handler)
  root.setLevel(logging.DEBUG)

  console = logging.StreamHandler(stream)
  console.setFormatter(formatter)
  console.setLevel(logging.DEBUG if config.verbose else logging.INFO)
  root.addHandler(console)

  try:
    logfile = logging.FileHandler(config.log_file, mode='a')
  except (IOError, OSError) as ex:
    logging.warning("Can't open log file %s (%s), logging to console only",
                    config.log_file, ex)
    return

  logfile.setFormatter(formatter)
  logfile.setLevel(logging.DEBUG)
  root.addHandler(logfile)
