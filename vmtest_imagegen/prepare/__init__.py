"""Image preparation module.

This module handles:
- Validating run options
- Sequencing version resolution, artifact fetches and image population
- Handing the provisioned image to the boot stage
"""

from vmtest_imagegen.prepare.models import PrepareOptions, PrepareResult

__all__ = ["PrepareOptions", "PrepareResult"]

# Access the pipeline via vmtest_imagegen.prepare.service
