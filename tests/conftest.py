import logging
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]

if str(ROOT) not in sys.path:
  sys.path.insert(0, str(ROOT))

import chroot_manager
from chroot_manager import mounts


class FakeMounts(object):
  """Stands in for mount(8), umount(8) and the kernel's view of mounts."""

  def __init__(self):
    self.mounted = set()
    self.calls = []
    self.failing = set()

  def is_mounted(self, path):
    return path in self.mounted

  def run_command(self, argv):
    self.calls.append(list(argv))
    target = argv[-1]
    if target in self.failing:
      return 32
    if argv[0] == 'mount':
      self.mounted.add(target)
    elif argv[0] == 'umount':
      self.mounted.discard(target)
    return 0

  def commands(self, program):
    return [call for call in self.calls if call[0] == program]


@pytest.fixture
def fake_mounts(monkeypatch):
  fake = FakeMounts()
  monkeypatch.setattr(mounts, 'is_mounted', fake.is_mounted)
  monkeypatch.setattr(mounts, 'run_command', fake.run_command)
  return fake


@pytest.fixture
def config(tmp_path):
  rootfs = tmp_path / 'jail'
  rootfs.mkdir()
  return chroot_manager.Config(
      rootfs=str(rootfs),
      trace_dir=str(tmp_path / 'traces'),
      log_file=str(tmp_path / 'chroot_manager.log'),
      install_prefix=str(tmp_path / 'usr' / 'local'),
      completion_dir=str(tmp_path / 'etc' / 'bash_completion.d'))


@pytest.fixture(autouse=True)
def restore_root_logger():
  root = logging.getLogger()
  handlers = list(root.handlers)
  level = root.level
  yield
  for handler in list(root.handlers):
    if handler not in handlers:
      root.removeHandler(handler)
      handler.close()
  for handler in handlers:
    if handler not in root.handlers:
      root.addHandler(handler)
  root.setLevel(level)
