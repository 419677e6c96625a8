from .entity import DictionaryRecord, EnrichableEntity
from .insights import CardInsights, is_valid_insights, validate_insights

__all__ = [
    'DictionaryRecord',
    'EnrichableEntity',
    'CardInsights',
    'is_valid_insights',
    'validate_insights',
]
