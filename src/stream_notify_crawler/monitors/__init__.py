"""Platform monitors.  Each subpackage registers one ``PlatformMonitor``."""
