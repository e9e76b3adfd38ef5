"""
Run the jail session under strace and turn the per-process logs it leaves
behind into something a person can browse.

strace is run with ``-ff -o <prefix>`` so that every process (and thread)
started inside the jail writes to its own ``<prefix>.<pid>`` file. Once the
session is over each file is named after the program the process executed,
``<program>_<pid>.log``, or deleted if that program is on the ignore list.
"""

import logging
import os
import pwd
import re
import subprocess

from chroot_manager import TraceError

# NOTE: a line from `strace -tt` looks like
#   12:34:56.789012 execve("/usr/bin/vim", ["vim"], 0x7ffd... /* 20 vars */) = 0
# We only care about the first argument, a C-escaped string. `execveat(` and
# `<... execve resumed>` don't match.
EXECVE_REGEX = re.compile(r'(?<![\w])execve\("((?:[^"\\]|\\.)*)"')
ESCAPE_REGEX = re.compile(r'\\(x[0-9a-fA-F]{2}|[0-7]{1,3}|.)')
PID_REGEX = re.compile(r'[0-9]+')

SIMPLE_ESCAPES = {
    'n': '\n',
    't': '\t',
    'r': '\r',
    'v': '\v',
    'f': '\f',
}


def _unescape_char(match):
  code = match.group(1)
  if code[0] == 'x' and len(code) == 3:
    return chr(int(code[1:], 16))
  if code[0] in '01234567':
    return chr(int(code, 8))
  return SIMPLE_ESCAPES.get(code, code)


def unescape(string):
  """Decode the C escapes strace uses when printing a string argument."""
  return ESCAPE_REGEX.sub(_unescape_char, string)


def parse_exec_path(lines):
  """
  Return the path passed to the first well formed execve() recorded in
  ``lines`` or None if there isn't one. A line which mentions execve but
  whose first argument isn't a complete quoted string is skipped.
  """
  for line in lines:
    if 'execve(' not in line:
      continue
    match = EXECVE_REGEX.search(line)
    if match is None:
      logging.debug("Skipping malformed execve record: %s", line.rstrip())
      continue
    return unescape(match.group(1))
  return None


class TraceLog(object):
  """One strace output file, holding the system calls of a single process."""

  def __init__(self, path, pid, program_path=None):
    self.path = path
    self.pid = pid
    self.program_path = program_path

  @property
  def program_name(self):
    if self.program_path:
      name = os.path.basename(self.program_path.rstrip('/'))
      if name:
        return name
    return 'pid{}'.format(self.pid)

  def get_reconciled_path(self):
    return os.path.join(os.path.dirname(self.path),
                        '{}_{}.log'.format(self.program_name, self.pid))

  @classmethod
  def from_path(cls, path, pid):
    with open(path, 'r', errors='replace') as infile:
      program_path = parse_exec_path(infile)
    return cls(path, pid, program_path)


def find_trace_logs(trace_dir, prefix):
  """
  Return (path, pid) for each strace output file in ``trace_dir``, sorted by
  pid.
  """
  found = []
  for name in os.listdir(trace_dir):
    if not name.startswith(prefix + '.'):
      continue
    suffix = name[len(prefix) + 1:]
    if not PID_REGEX.fullmatch(suffix):
      logging.debug("Ignoring %s, suffix is not a pid", name)
      continue
    found.append((os.path.join(trace_dir, name), int(suffix)))
  return sorted(found, key=lambda item: item[1])


def check_trace_dir(trace_dir, prefix):
  """
  Create ``trace_dir`` if needed and make sure no strace output from another
  run is waiting there. Such files would be indistinguishable from ours.
  """
  if not os.path.isdir(trace_dir):
    try:
      os.makedirs(trace_dir)
    except OSError as ex:
      raise TraceError("Failed to create daemon log directory {}: {}".format(
          trace_dir, ex))

  stale = [name for name in os.listdir(trace_dir)
           if name.startswith(prefix + '.')]
  if stale:
    raise TraceError(
        "{} already contains {} from another session ({}). Move them away or"
        " use a different --trace-dir".format(
            trace_dir, prefix + '.*', ', '.join(sorted(stale))))


def get_strace_command(trace_dir, prefix, command):
  return ['strace', '-ff', '-tt', '-o', os.path.join(trace_dir, prefix)] \
      + list(command)


def run_traced_session(config, command):
  """
  Run ``command`` under strace, following forks, and wait for it to exit.
  Returns the exit status.
  """
  check_trace_dir(config.trace_dir, config.trace_prefix)
  argv = get_strace_command(config.trace_dir, config.trace_prefix, command)
  logging.info("Daemon mode enabled. Monitoring chroot session with strace.")
  logging.debug("Running: %s", ' '.join(argv))
  try:
    return subprocess.call(argv)
  except OSError as ex:
    raise TraceError("Failed to start strace: {}".format(ex))


class ReconcileReport(object):
  """What became of each trace file."""

  def __init__(self):
    self.kept = []
    self.discarded = []
    self.failed = []

  def __repr__(self):
    return 'ReconcileReport(kept={}, discarded={}, failed={})'.format(
        len(self.kept), len(self.discarded), len(self.failed))


def reconcile(trace_dir, prefix, ignore):
  """
  Rename each strace output file in ``trace_dir`` to
  ``<program>_<pid>.log``, deleting those whose program basename is in
  ``ignore``. Problems with individual files are logged and recorded in the
  report, they never stop the pass.
  """
  logging.info("Post-processing daemon logs in directory: %s", trace_dir)
  ignore = set(ignore)
  report = ReconcileReport()

  for path, pid in find_trace_logs(trace_dir, prefix):
    try:
      tracelog = TraceLog.from_path(path, pid)
      if tracelog.program_name in ignore:
        logging.debug("Ignoring trivial log for program '%s' (file: %s)."
                      " Removing.", tracelog.program_name, path)
        os.remove(path)
        report.discarded.append(path)
        continue

      newpath = tracelog.get_reconciled_path()
      if os.path.exists(newpath):
        logging.error("Not renaming %s, %s already exists", path, newpath)
        report.failed.append(path)
        continue

      logging.info("Renaming log file '%s' to '%s'", path, newpath)
      os.rename(path, newpath)
      report.kept.append(newpath)
    except (IOError, OSError) as ex:
      logging.error("Failed to post-process %s: %s", path, ex)
      report.failed.append(path)

  return report


def invoking_user(environ=None):
  """Return the name of the user who ran us through sudo, if any."""
  if environ is None:
    environ = os.environ
  return environ.get('SUDO_USER') or None


def normalize_ownership(trace_dir, user=None):
  """
  Hand ``trace_dir`` and everything in it over to ``user`` and make it
  readable by everyone: directories rwxr-xr-x, files rw-r--r--.
  """
  ids = None
  if user:
    try:
      pwent = pwd.getpwnam(user)
      ids = (pwent.pw_uid, pwent.pw_gid)
      logging.info("Changing ownership of %s to user %s", trace_dir, user)
    except KeyError:
      logging.error("Unknown user %s, not changing ownership of %s",
                    user, trace_dir)

  logging.info("Setting permissions on %s and its files.", trace_dir)
  _normalize_entry(trace_dir, ids, 0o755)
  for dirpath, dirnames, filenames in os.walk(trace_dir):
    for dirname in dirnames:
      _normalize_entry(os.path.join(dirpath, dirname), ids, 0o755)
    for filename in filenames:
      _normalize_entry(os.path.join(dirpath, filename), ids, 0o644)


def _normalize_entry(path, ids, mode):
  # NOTE: os.chown and os.chmod follow symlinks
  if os.path.islink(path):
    logging.warning("Not changing %s, it is a symbolic link", path)
    return

  try:
    if ids is not None:
      os.chown(path, ids[0], ids[1])
    os.chmod(path, mode)
  except OSError as ex:
    logging.error("Failed to set ownership/permissions of %s: %s", path, ex)
