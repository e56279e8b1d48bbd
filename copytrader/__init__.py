"""Copy trading: mirror primary-account futures trades onto follower accounts."""

__version__ = "1.0.0"
