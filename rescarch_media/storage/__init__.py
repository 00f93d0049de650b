"""Block device inspection, partitioning, image writing and repository building.

Modules:
    - devices / device_kinds: resolve and classify the target device
    - validation: safety gate run before anything destructive
    - partition_table: MBR and GPT append via sfdisk / sgdisk
    - iso: source verification, wipe and raw image writes
    - format: ext4 creation for the persistent partition
    - provision: append and fill the extra partitions in order
    - offline_repo: build the EROFS offline package repository
    - cleanup: registry of transient mounts, files and directories
"""
