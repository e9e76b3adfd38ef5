"""
Bind the host's pseudo filesystems into the jail and take them down again.
"""

import collections
import contextlib
import logging
import os
import re
import signal
import subprocess

from chroot_manager import MountError

MountPoint = collections.namedtuple('MountPoint', ['relpath', 'fstype'])

# NOTE: dev must be mounted before dev/pts, and dev/pts must be
# unmounted before dev or umount fails with "target is busy".
MOUNT_POINTS = (
    MountPoint('dev', 'bind'),
    MountPoint('proc', 'bind'),
    MountPoint('sys', 'bind'),
    MountPoint('tmp', 'bind'),
    MountPoint('dev/pts', 'devpts'),
)

MountEntry = collections.namedtuple('MountEntry',
                                    ['source', 'mountpoint', 'fstype'])


def run_command(argv):
  """Run an external program and return its exit status."""
  logging.debug("Running: %s", ' '.join(argv))
  return subprocess.call(argv)


def is_mounted(path, table_path='/proc/mounts'):
  """
  Return True if ``path`` is a mount point according to the kernel mount
  table. Unlike os.path.ismount this also sees bind mounts that stay on the
  same filesystem.
  """
  path = os.path.normpath(path)
  return any(entry.mountpoint == path
             for entry in read_mount_table(table_path))


def get_target(rootfs, mountpoint):
  return os.path.join(rootfs, mountpoint.relpath)


def get_mount_command(rootfs, mountpoint):
  """Return the argument vector that mounts ``mountpoint`` into ``rootfs``."""
  target = get_target(rootfs, mountpoint)
  if mountpoint.fstype == 'devpts':
    return ['mount', '-t', 'devpts', 'devpts', target]
  return ['mount', '--bind', '/' + mountpoint.relpath, target]


def make_sure_is_dir(need_dir, source):
  """
  Ensure that the given path is a directory, creating the directory and all
  its parents if needed.
  """

  if not os.path.isdir(need_dir):
    logging.warning("creating rootfs directory %s because it is "
                    "needed to mount %s", need_dir, source)
    try:
      os.makedirs(need_dir)
    except OSError as ex:
      raise MountError("Failed to create mount target {}: {}".format(
          need_dir, ex))


def mount_all(config):
  """
  Mount each of MOUNT_POINTS into the jail, in order, skipping those that
  are already mounted. Raises MountError on the first failure without
  undoing the mounts already made. Returns the list of targets mounted by
  this call.
  """
  mounted = []
  for mountpoint in MOUNT_POINTS:
    target = get_target(config.rootfs, mountpoint)
    if is_mounted(target):
      logging.debug("%s is already mounted.", target)
      continue

    argv = get_mount_command(config.rootfs, mountpoint)
    logging.info("Mounting %s to %s...", argv[-2], target)
    make_sure_is_dir(target, argv[-2])
    if run_command(argv) != 0:
      raise MountError("Error mounting {} at {}".format(argv[-2], target))
    mounted.append(target)

  return mounted


def unmount_all(config):
  """
  Unmount each of MOUNT_POINTS from the jail in reverse order. Failures are
  logged and the remaining targets are still attempted. Returns True if any
  of the targets was mounted.
  """
  any_mounted = False
  for mountpoint in reversed(MOUNT_POINTS):
    target = get_target(config.rootfs, mountpoint)
    if not is_mounted(target):
      logging.debug("%s is not mounted.", target)
      continue

    any_mounted = True
    logging.info("Unmounting %s...", target)
    if run_command(['umount', target]) != 0:
      logging.error("Error unmounting %s", target)

  return any_mounted


def _raise_exit(signum, _frame):
  raise SystemExit(128 + signum)


@contextlib.contextmanager
def mounted(config, signals=(signal.SIGTERM, signal.SIGHUP)):
  """
  Mount the jail filesystems for the duration of the block. They are
  unmounted however the block is left, including when the process receives
  SIGINT or one of ``signals``.
  """
  previous = {}
  for signum in signals:
    previous[signum] = signal.signal(signum, _raise_exit)

  try:
    mount_all(config)
    yield config
  finally:
    logging.info("Cleaning up: Unmounting filesystems...")
    unmount_all(config)
    logging.info("Cleanup complete.")
    for signum, handler in previous.items():
      signal.signal(signum, handler)


def _unescape_mount_path(path):
  # /proc/mounts uses octal escapes such as \040 for space
  return re.sub(r'\\([0-7]{3})', lambda match: chr(int(match.group(1), 8)),
                path)


def read_mount_table(table_path='/proc/mounts'):
  """Return the list of MountEntry in the kernel mount table."""
  entries = []
  with open(table_path, 'r') as infile:
    for line in infile:
      parts = line.split()
      if len(parts) < 3:
        continue
      entries.append(MountEntry(_unescape_mount_path(parts[0]),
                                _unescape_mount_path(parts[1]),
                                parts[2]))
  return entries


def mounts_under(rootfs, table_path='/proc/mounts'):
  """Return the mount table entries at or beneath ``rootfs``."""
  rootfs = os.path.normpath(rootfs)
  return [entry for entry in read_mount_table(table_path)
          if entry.mountpoint == rootfs
          or entry.mountpoint.startswith(rootfs.rstrip('/') + '/')]
