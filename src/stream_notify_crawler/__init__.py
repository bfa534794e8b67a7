"""Stream Notify Crawler.

Polls live-streaming platforms for tracked channels and announces broadcast
state transitions on a Redis pub/sub broker.
"""

__version__ = "0.1.0"
