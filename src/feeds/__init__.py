"""
Target wallet position feeds.
"""

from .limitless import LimitlessPositionFeed, parse_portfolio, parse_position

__all__ = ["LimitlessPositionFeed", "parse_portfolio", "parse_position"]
