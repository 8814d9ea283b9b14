"""Convert an ext4 root partition to Btrfs in place and keep it maintained."""

from .__version__ import __version__

__all__ = ["__version__"]
