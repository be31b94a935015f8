"""Back up recordings from a video-management appliance into a local tree."""

__version__ = "1.0.0"
