"""vmtest image generator - disk image provisioning for kernel test VMs.

This package resolves kernel and root filesystem artifacts, builds or clones
the VM disk image, injects the kernel, test sources and boot scripts into it,
and reads back the exit status the guest recorded.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
