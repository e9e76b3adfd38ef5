"""
The operations behind each subcommand of the command line tool.
"""

import gzip
import logging
import os
import shutil
import subprocess
import sys

from chroot_manager import (BootstrapError, ChrootManagerError,
                            MissingDependencyError, PreconditionError,
                            PrivilegeError, XAccessError, mounts, trace)

DATA_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'data')
MANPAGE_NAME = 'chroot_manager.1'
COMPLETION_NAME = 'chroot_manager.bash_completion'
PROGRAM_NAME = 'chroot_manager'

CREATE_DEPENDENCIES = ['debootstrap']
CONNECT_DEPENDENCIES = ['chroot', 'mount', 'umount', 'xhost', 'xauth']

LAUNCHER_TEMPLATE = """#!{python}
import sys

from chroot_manager.__main__ import main

if __name__ == '__main__':
  sys.exit(main())
"""


def run_command(argv, **kwargs):
  """Run an external program and return its exit status."""
  logging.debug("Running: %s", ' '.join(argv))
  return subprocess.call(argv, **kwargs)


def require_root(command):
  if os.geteuid() != 0:
    raise PrivilegeError(
        "The '{}' command must be run as root (use sudo).".format(command))


def check_dependencies(names):
  """Raise MissingDependencyError unless every program in names is on PATH."""
  missing = []
  for name in names:
    if shutil.which(name) is None:
      logging.error("Required command '%s' is not installed.", name)
      missing.append(name)

  if missing:
    raise MissingDependencyError(
        "Missing required commands: {}".format(', '.join(missing)))


def check_jail(config):
  if not os.path.isdir(config.rootfs):
    raise PreconditionError(
        "Chroot jail '{}' does not exist. Please create the chroot environment"
        " first using the 'create' command.".format(config.rootfs))


def create(config):
  """Populate a new chroot jail at config.rootfs with debootstrap."""
  require_root('create')
  check_dependencies(CREATE_DEPENDENCIES)
  if os.path.isdir(config.rootfs):
    raise PreconditionError(
        "Chroot jail already exists at {}. Use 'connect' to enter it, or"
        " 'disconnect' if mounts remain.".format(config.rootfs))

  logging.info("Creating chroot jail at %s using debootstrap...",
               config.rootfs)
  try:
    os.makedirs(config.rootfs)
  except OSError as ex:
    raise PreconditionError("Failed to create directory {}: {}".format(
        config.rootfs, ex))

  if run_command(['debootstrap', config.suite, config.rootfs,
                  config.mirror]) != 0:
    raise BootstrapError(
        "debootstrap failed. Check your network and settings.")
  logging.info("Chroot jail successfully created.")


def get_xauth_keys():
  try:
    output = subprocess.check_output(['xauth', 'list'])
  except (OSError, subprocess.CalledProcessError) as ex:
    logging.error("'xauth list' failed: %s", ex)
    return []
  return [line for line in output.decode('utf-8', 'replace').splitlines()
          if line.strip()]


def copy_to_clipboard(text):
  """Try to put text on the X clipboard. Return True on success."""
  if shutil.which('xclip') is None:
    return False

  try:
    proc = subprocess.Popen(['xclip', '-selection', 'clipboard'],
                            stdin=subprocess.PIPE)
    proc.communicate(text.encode('utf-8'))
  except OSError as ex:
    logging.error("xclip failed: %s", ex)
    return False
  return proc.returncode == 0


def setup_x_access(out=None):
  """
  Allow X clients in the jail to reach the host's X server and hand the
  user the authentication keys they need to register inside the jail.
  Returns the list of keys.
  """
  if out is None:
    out = sys.stdout

  logging.info("Running 'xhost +' to allow X connections...")
  if run_command(['xhost', '+']) != 0:
    raise XAccessError("Error running 'xhost +'.")

  logging.info("Retrieving X authentication keys with 'xauth list'...")
  keys = get_xauth_keys()
  if not keys:
    logging.warning("'xauth list' returned no output.")
  elif copy_to_clipboard('\n'.join(keys) + '\n'):
    logging.info("X authentication keys have been copied to your clipboard.")
  else:
    logging.info("xclip not found. Here are your X authentication keys:")
    for key in keys:
      out.write(key + '\n')

  first_key = keys[0] if keys else '<key>'
  out.write('\n'
            '------------------------------\n'
            'Now entering the chroot environment.\n'
            'Inside the chroot, add the X authentication key by running:\n'
            '   xauth add <paste-from-clipboard>\n'
            'For example, if your clipboard contains:\n'
            '   {key}\n'
            'then run:\n'
            '   xauth add {key}\n'
            '------------------------------\n'.format(key=first_key))
  return keys


def revoke_x_access():
  if run_command(['xhost', '-']) == 0:
    logging.info("X server access has been revoked.")
  else:
    logging.warning("Failed to revoke X server permissions with 'xhost -'.")


def connect(config, prompt=input):
  """
  Mount the jail filesystems, enter the jail and wait for the user to leave
  it. In daemon mode the session runs under strace and the resulting logs
  are reconciled afterwards. Returns the exit status of the session.
  """
  require_root('connect')
  dependencies = list(CONNECT_DEPENDENCIES)
  if config.daemon:
    dependencies.append('strace')
  check_dependencies(dependencies)
  check_jail(config)
  if config.daemon:
    trace.check_trace_dir(config.trace_dir, config.trace_prefix)

  chroot_argv = ['chroot', config.rootfs]
  with mounts.mounted(config):
    setup_x_access()
    prompt("Press Enter to continue...")

    logging.info("Entering chroot at %s...", config.rootfs)
    if config.daemon:
      returncode = trace.run_traced_session(config, chroot_argv)
      report = trace.reconcile(config.trace_dir, config.trace_prefix,
                               config.ignore)
      logging.info("Kept %d trace logs, discarded %d, failed %d",
                   len(report.kept), len(report.discarded),
                   len(report.failed))
      trace.normalize_ownership(config.trace_dir, trace.invoking_user())
    else:
      returncode = run_command(chroot_argv)
    logging.info("Chroot session ended.")

  return returncode


def disconnect(config):
  """Unmount whatever is still mounted in the jail and revoke X access."""
  require_root('disconnect')
  check_jail(config)

  if not mounts.mounts_under(config.rootfs):
    logging.info("Chroot environment appears to be clean; no mounts found"
                 " at %s.", config.rootfs)
    return

  logging.info("Running disconnect: unmounting chroot filesystems...")
  mounts.unmount_all(config)
  revoke_x_access()


def status(config, out=None):
  """Print the mounts which live inside the jail."""
  if out is None:
    out = sys.stdout

  out.write('Mount status for chroot jail ({}):\n'.format(config.rootfs))
  entries = mounts.mounts_under(config.rootfs)
  if not entries:
    out.write('No mounts found for {}.\n'.format(config.rootfs))
  for entry in entries:
    out.write('{} on {} type {}\n'.format(entry.source, entry.mountpoint,
                                         entry.fstype))
  return entries


def get_install_paths(config):
  """Return the (launcher, manpage, completion) paths used by install."""
  return (os.path.join(config.install_prefix, 'bin', PROGRAM_NAME),
          os.path.join(config.install_prefix, 'share', 'man', 'man1',
                       MANPAGE_NAME + '.gz'),
          os.path.join(config.completion_dir, PROGRAM_NAME))


def install(config):
  """Install a launcher, the man page and the bash completion file."""
  require_root('install')
  launcher, manpage, completion = get_install_paths(config)

  logging.info("Installing chroot_manager to %s...", launcher)
  try:
    os.makedirs(os.path.dirname(launcher), exist_ok=True)
    with open(launcher, 'w') as outfile:
      outfile.write(LAUNCHER_TEMPLATE.format(python=sys.executable))
    os.chmod(launcher, 0o755)
  except OSError as ex:
    raise ChrootManagerError("Failed to install {}: {}".format(launcher, ex))

  manpage_src = os.path.join(DATA_DIR, MANPAGE_NAME)
  if os.path.exists(manpage_src):
    logging.info("Installing man page...")
    try:
      os.makedirs(os.path.dirname(manpage), exist_ok=True)
      with open(manpage_src, 'rb') as infile:
        with gzip.open(manpage, 'wb') as outfile:
          shutil.copyfileobj(infile, outfile)
    except OSError as ex:
      logging.error("Failed to copy man page: %s", ex)
  else:
    logging.debug("No man page (%s) found.", manpage_src)

  completion_src = os.path.join(DATA_DIR, COMPLETION_NAME)
  if os.path.exists(completion_src):
    logging.info("Installing bash completion...")
    try:
      os.makedirs(os.path.dirname(completion), exist_ok=True)
      shutil.copyfile(completion_src, completion)
    except OSError as ex:
      logging.error("Failed to install bash completion: %s", ex)
  else:
    logging.debug("No bash completion file (%s) found.", completion_src)

  logging.info("Installation complete.")


def uninstall(config):
  """Remove everything install put in place."""
  require_root('uninstall')
  launcher, manpage, completion = get_install_paths(config)

  for what, path in (('chroot_manager', launcher),
                     ('man page', manpage),
                     ('bash completion', completion)):
    logging.info("Removing %s (%s)...", what, path)
    try:
      os.remove(path)
    except FileNotFoundError:
      logging.debug("%s was not installed", path)
    except OSError as ex:
      logging.error("Failed to remove %s: %s", path, ex)

  logging.info("Uninstallation complete.")
