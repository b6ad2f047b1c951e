"""elinux-runner - deploy and supervise app bundles on embedded Linux targets."""

__version__ = "0.1.0"
