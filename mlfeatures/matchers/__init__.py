"""
Descriptor matchers.
"""

from .base_matcher import AffinityMatcher, MatcherConfig, build_match_result
from .superglue import SuperGlueConfig, SuperGlueMatcher
from .loftr import LoFTRConfig, LoFTRMatcher

__all__ = [
    'AffinityMatcher',
    'MatcherConfig',
    'build_match_result',
    'SuperGlueConfig',
    'SuperGlueMatcher',
    'LoFTRConfig',
    'LoFTRMatcher',
]
