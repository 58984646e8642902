from .trend import TrendAnalyzer, TrendSettings, classify_phase

__all__ = ["TrendAnalyzer", "TrendSettings", "classify_phase"]
