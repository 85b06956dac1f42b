"""sharesync - keeps ZFS datasets and NFS exports in step with share configuration."""

__version__ = "0.3.0"
