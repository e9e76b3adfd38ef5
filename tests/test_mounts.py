import os
import signal

import pytest

from chroot_manager import MountError, mounts


def _targets(config, *relpaths):
  return [os.path.join(config.rootfs, relpath) for relpath in relpaths]


def test_mount_all_mounts_in_order(config, fake_mounts):
  mounted = mounts.mount_all(config)

  dev, proc, sys_, tmp, pts = _targets(config, 'dev', 'proc', 'sys', 'tmp',
                                       'dev/pts')
  assert fake_mounts.calls == [
      ['mount', '--bind', '/dev', dev],
      ['mount', '--bind', '/proc', proc],
      ['mount', '--bind', '/sys', sys_],
      ['mount', '--bind', '/tmp', tmp],
      ['mount', '-t', 'devpts', 'devpts', pts],
  ]
  assert mounted == [dev, proc, sys_, tmp, pts]
  for target in mounted:
    assert os.path.isdir(target)


def test_mount_then_unmount_leaves_nothing_mounted(config, fake_mounts):
  mounts.mount_all(config)
  assert mounts.unmount_all(config) is True

  assert fake_mounts.mounted == set()
  assert [call[1] for call in fake_mounts.commands('umount')] == _targets(
      config, 'dev/pts', 'tmp', 'sys', 'proc', 'dev')


def test_mount_all_twice_mounts_nothing_the_second_time(config, fake_mounts):
  mounts.mount_all(config)
  ncalls = len(fake_mounts.calls)

  assert mounts.mount_all(config) == []
  assert len(fake_mounts.calls) == ncalls


def test_unmount_all_when_nothing_is_mounted(config, fake_mounts):
  assert mounts.unmount_all(config) is False
  assert fake_mounts.calls == []


def test_unmount_failure_is_not_fatal(config, fake_mounts):
  mounts.mount_all(config)
  sys_target = os.path.join(config.rootfs, 'sys')
  fake_mounts.failing.add(sys_target)

  assert mounts.unmount_all(config) is True
  assert fake_mounts.mounted == {sys_target}
  assert len(fake_mounts.commands('umount')) == 5


def test_mount_failure_stops_without_rollback(config, fake_mounts):
  dev, proc = _targets(config, 'dev', 'proc')
  fake_mounts.failing.add(proc)

  with pytest.raises(MountError):
    mounts.mount_all(config)

  assert len(fake_mounts.commands('mount')) == 2
  assert fake_mounts.mounted == {dev}


def test_mount_target_that_is_a_file_is_a_mount_error(config, fake_mounts):
  tmp = os.path.join(config.rootfs, 'tmp')
  with open(tmp, 'w') as outfile:
    outfile.write('not a directory\n')

  with pytest.raises(MountError) as excinfo:
    mounts.mount_all(config)

  assert 'Failed to create mount target' in str(excinfo.value)
  assert tmp not in fake_mounts.mounted
  assert len(fake_mounts.commands('mount')) == 3


def test_mounted_unmounts_when_block_raises(config, fake_mounts):
  with pytest.raises(RuntimeError):
    with mounts.mounted(config):
      assert len(fake_mounts.mounted) == 5
      raise RuntimeError('session crashed')

  assert fake_mounts.mounted == set()


def test_mounted_cleans_up_after_partial_mount(config, fake_mounts):
  fake_mounts.failing.add(os.path.join(config.rootfs, 'sys'))

  with pytest.raises(MountError):
    with mounts.mounted(config):
      pytest.fail('block must not run')

  assert fake_mounts.mounted == set()


@pytest.mark.parametrize('signum', [signal.SIGTERM, signal.SIGHUP])
def test_mounted_unmounts_on_signal(config, fake_mounts, signum):
  previous = signal.getsignal(signum)

  with pytest.raises(SystemExit) as excinfo:
    with mounts.mounted(config):
      os.kill(os.getpid(), signum)

  assert excinfo.value.code == 128 + signum
  assert fake_mounts.mounted == set()
  assert signal.getsignal(signum) == previous


def test_read_mount_table_decodes_escapes(tmp_path):
  table = tmp_path / 'mounts'
  table.write_text(
      'proc /proc proc rw,nosuid 0 0\n'
      'udev /var/my\\040jail/dev devtmpfs rw 0 0\n'
      'garbage\n')

  entries = mounts.read_mount_table(str(table))

  assert entries == [
      mounts.MountEntry('proc', '/proc', 'proc'),
      mounts.MountEntry('udev', '/var/my jail/dev', 'devtmpfs'),
  ]


def test_mounts_under_only_matches_the_jail(tmp_path):
  table = tmp_path / 'mounts'
  table.write_text(
      'udev /var/chroot/dev devtmpfs rw 0 0\n'
      'devpts /var/chroot/dev/pts devpts rw 0 0\n'
      'udev /var/chroot2/dev devtmpfs rw 0 0\n'
      'proc /proc proc rw 0 0\n')

  entries = mounts.mounts_under('/var/chroot/', str(table))

  assert [entry.mountpoint for entry in entries] == [
      '/var/chroot/dev', '/var/chroot/dev/pts']


def _write_table(path, *mountpoints):
  path.write_text(''.join('tmpfs {} tmpfs rw 0 0\n'.format(mountpoint)
                          for mountpoint in mountpoints))
  return str(path)


def test_is_mounted_reads_the_mount_table(tmp_path):
  # A bind mount from the same filesystem, which os.path.ismount can't see
  table = _write_table(tmp_path / 'mounts', '/proc', '/var/chroot/tmp')

  assert mounts.is_mounted('/var/chroot/tmp', table)
  assert mounts.is_mounted('/var/chroot/tmp/', table)
  assert not mounts.is_mounted('/var/chroot/dev', table)
  assert not mounts.is_mounted('/var/chroot', table)


def test_unmount_all_sees_same_filesystem_bind(config, tmp_path, monkeypatch):
  tmp = os.path.join(config.rootfs, 'tmp')
  table = _write_table(tmp_path / 'mounts', '/proc', tmp)
  real_read = mounts.read_mount_table
  monkeypatch.setattr(mounts, 'read_mount_table',
                      lambda table_path='/proc/mounts': real_read(table))
  calls = []
  monkeypatch.setattr(mounts, 'run_command',
                      lambda argv: calls.append(argv) or 0)

  assert mounts.unmount_all(config) is True
  assert calls == [['umount', tmp]]
