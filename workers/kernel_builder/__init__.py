"""
kernel_builder — kernel image + bootable disk image builder.

Drives an existing kernel tree's make targets under a sandbox and turns
compilation failures into a single diagnosable title line.

Profile: linux-amd64-kbuild
"""

__version__ = "0.1.0"
BUILDER_NAME = "kernel_builder"
BUILDER_VERSION = "v1"
PROFILE_ID = "linux-amd64-kbuild"
