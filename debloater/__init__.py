"""
Android Debloater -- core library

Discover Android devices over adb, classify their packages against the
UAD recommendation list, and disable / uninstall / restore packages in bulk
across devices with a result for every (device, package) pair.

Components:
    debloater.executor      -- CommandExecutor: one adb command, bounded and classified
    debloater.registry      -- DeviceRegistry: attached devices and their state
    debloater.package_list  -- PackageListCache: the recommendation list, cached on disk
    debloater.orchestrator  -- ActionOrchestrator: batch actions across devices
    debloater.update        -- release check and self-update
    debloater.cli           -- the ``debloater`` command
"""

__version__ = "1.0.0"
