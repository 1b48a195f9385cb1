"""
AdMirror - Competitor ad creative intelligence

Scores competitor ads, classifies competitors into behavioral tracks, and
tags image and video creatives against fixed visual/structural taxonomies.
"""

__version__ = "0.1.0"
__author__ = "AdMirror Team"
