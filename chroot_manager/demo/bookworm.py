# The directory holding the chroot jail
rootfs = "/srv/chroot/bookworm"

# Debian mirror passed to debootstrap by `create`
mirror = "http://deb.debian.org/debian"

# Debian suite (codename) passed to debootstrap by `create`
suite = "bookworm"

# Every message, including debug messages, is appended to this file
# together with its severity and a timestamp.
log_file = "/var/log/chroot_manager.log"

# strace writes each process's log to <trace_dir>/<trace_prefix>.<pid>.
# After the session these are renamed to <program>_<pid>.log
trace_dir = "/srv/chroot/traces"
trace_prefix = "bookworm.strace"

# Traces of programs with these basenames are deleted after the session
# instead of being renamed.
ignore = [
    "bash",
    "sh",
    "ls",
    "cat",
    "echo",
    "grep",
    "mount",
    "umount",
    # "sed",
    # "awk",
    "dircolors",
    "lesspipe",
]

# Trace every session
daemon = True
