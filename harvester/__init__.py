"""Problem harvester: crawl, schedule, screen and review instructional problems."""

__version__ = "0.1.0"
