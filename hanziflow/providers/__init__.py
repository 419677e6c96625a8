from .openai_provider import OpenAIEnrichmentProvider, build_services, clean_json_response, map_openai_error
from .prompt_manager import PromptManager

__all__ = [
    'OpenAIEnrichmentProvider',
    'PromptManager',
    'build_services',
    'clean_json_response',
    'map_openai_error',
]
