"""TSDF mapping, scan registration and point cloud preprocessing for lidar data."""

__version__ = "0.1.0"