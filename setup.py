import io
from setuptools import setup

VERSION = None
with io.open('chroot_manager/__init__.py', encoding='utf-8') as infile:
  for line in infile:
    line = line.strip()
    if line.startswith('VERSION ='):
      VERSION = line.split('=', 1)[1].strip().strip("'")

assert VERSION is not None

with io.open('README.rst', encoding='utf8') as infile:
  long_description = infile.read()

setup(
    name='chroot_manager',
    packages=['chroot_manager'],
    package_data={
        'chroot_manager': ['data/chroot_manager.1',
                           'data/chroot_manager.bash_completion',
                           'demo/*.py'],
    },
    version=VERSION,
    description="create, enter and trace a debootstrap chroot jail",
    long_description=long_description,
    python_requires='>=3.9',
    keywords=['chroot', 'linux', 'debootstrap', 'strace'],
    classifiers=[
        'Operating System :: POSIX :: Linux',
        'Programming Language :: Python :: 3',
    ],
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': ['chroot_manager=chroot_manager.__main__:main'],
    }
)
