"""
OpenAI-backed enrichment collaborators

Interpretation, confusions and insights use chat completions with the YAML
prompts; images use the image API and audio the speech API. Provider errors
are translated into the hanziflow error taxonomy here, so nothing above this
module sees an openai exception.
"""

import base64
import json
import logging
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from hanziflow.db.connection import Database
from hanziflow.db.repository import DictionaryRepository
from hanziflow.enrichment.collaborators import EnrichmentServices, SqlDictionary
from hanziflow.errors import ConfigurationError, TransientExternalError, ValidationError
from hanziflow.models.entity import MISSING_GLOSSES
from .prompt_manager import PromptManager

logger = logging.getLogger(__name__)

# Exact answers the model gives when it cannot interpret a key
PLACEHOLDER_GLOSSES = frozenset(MISSING_GLOSSES) | {'Unknown', 'Unknown phrase'}


def clean_json_response(content: str) -> str:
    """Remove markdown code blocks from OpenAI response"""
    content = content.strip()
    if content.startswith('```json'):
        content = content[7:]
    if content.startswith('```'):
        content = content[3:]
    if content.endswith('```'):
        content = content[:-3]
    return content.strip()


def map_openai_error(error: Exception, service: str = 'openai') -> Exception:
    """
    Translate an openai exception into the hanziflow taxonomy.

    Only credential failures are ConfigurationError. Other 4xx responses
    reject one request (content policy, bad input) and become
    ValidationError, which a stage records without stopping the run.
    """
    message = f"{service} request failed: {error}"
    if isinstance(error, (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)):
        return TransientExternalError(message, service=service)
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ConfigurationError(message)
    if isinstance(error, openai.APIStatusError):
        if error.status_code >= 500 or error.status_code in (408, 409):
            return TransientExternalError(message, service=service)
        return ValidationError(message)
    return TransientExternalError(message, service=service)


class OpenAIEnrichmentProvider:
    """
    Enrichment collaborators backed by OpenAI.

    Every public coroutine has the collaborator shape ``(key, context)``.

    Usage:
        provider = OpenAIEnrichmentProvider.from_config(HanziflowConfig())
        services = provider.services(dictionary=SqlDictionary(repo))
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = 'gpt-4o-mini',
        image_model: str = 'dall-e-3',
        image_size: str = '1024x1024',
        tts_model: str = 'tts-1',
        tts_voice: str = 'nova',
        prompt_manager: Optional[PromptManager] = None,
        client: Optional[AsyncOpenAI] = None,
        confusion_limit: int = 3
    ):
        if client is None:
            if not api_key:
                raise ConfigurationError("OpenAI API key is not configured")
            client = AsyncOpenAI(api_key=api_key)
        self.client = client
        self.model = model
        self.image_model = image_model
        self.image_size = image_size
        self.tts_model = tts_model
        self.tts_voice = tts_voice
        self.prompt_manager = prompt_manager or PromptManager()
        self.confusion_limit = confusion_limit

    @classmethod
    def from_config(cls, config) -> 'OpenAIEnrichmentProvider':
        settings = config.get_openai_config()
        return cls(
            api_key=settings.get('api_key'),
            model=settings.get('model', 'gpt-4o-mini'),
            image_model=settings.get('image_model', 'dall-e-3'),
            image_size=settings.get('image_size', '1024x1024'),
            tts_model=settings.get('tts_model', 'tts-1'),
            tts_voice=settings.get('tts_voice', 'nova'),
        )

    async def _complete_json(
        self,
        prompt_name: str,
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
        **variables
    ) -> Dict[str, Any]:
        messages = []
        system_prompt = self.prompt_manager.get_system_prompt(prompt_name)
        if system_prompt:
            messages.append({'role': 'system', 'content': system_prompt})
        messages.append({'role': 'user', 'content': self.prompt_manager.get_user_prompt(prompt_name, **variables)})

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                response_format={'type': 'json_object'}
            )
        except openai.OpenAIError as e:
            raise map_openai_error(e) from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ValidationError(f"Empty {prompt_name} response from OpenAI")

        try:
            data = json.loads(clean_json_response(content))
        except json.JSONDecodeError as e:
            logger.warning(f"Unparseable {prompt_name} response: {content[:200]}")
            raise ValidationError(f"Invalid JSON in {prompt_name} response: {e}") from e

        if not isinstance(data, dict):
            raise ValidationError(f"Expected a JSON object in {prompt_name} response")
        return data

    async def interpret(self, key: str, context: Dict[str, Any]) -> Dict[str, str]:
        data = await self._complete_json(
            'interpretation',
            max_tokens=200,
            key=key,
            dictionary_entry=context.get('dictionary_entry')
        )
        gloss = data.get('gloss') or data.get('meaning') or ''
        pronunciation = data.get('pronunciation') or data.get('pinyin') or ''
        gloss = str(gloss).strip()
        if gloss in PLACEHOLDER_GLOSSES:
            raise ValidationError(f"OpenAI could not interpret {key}")
        return {'pronunciation': str(pronunciation).strip(), 'gloss': gloss}

    async def find_confusions(self, key: str, context: Dict[str, Any]) -> List[str]:
        data = await self._complete_json(
            'confusions',
            max_tokens=200,
            key=key,
            limit=self.confusion_limit,
            pronunciation=context.get('pronunciation'),
            gloss=context.get('gloss')
        )
        confusions = data.get('confusions')
        if not isinstance(confusions, list):
            raise ValidationError(f"No confusion list in response for {key}")
        return [str(c) for c in confusions]

    async def generate_insights(self, key: str, context: Dict[str, Any]) -> Dict[str, Any]:
        return await self._complete_json(
            'insights',
            temperature=0.5,
            max_tokens=1500,
            key=key,
            pronunciation=context.get('pronunciation'),
            gloss=context.get('gloss')
        )

    async def generate_image(self, key: str, context: Dict[str, Any]) -> bytes:
        meaning = context.get('gloss') or key
        prompt = (
            f"Mnemonic illustration of \"{meaning}\". Objects are shown on their own in close-up, "
            f"emotions through facial expressions, actions by people doing them. "
            f"Photorealistic, natural lighting, absolutely no text, letters or numbers."
        )
        try:
            response = await self.client.images.generate(
                model=self.image_model,
                prompt=prompt,
                size=self.image_size,
                n=1,
                response_format='b64_json'
            )
        except openai.OpenAIError as e:
            raise map_openai_error(e, 'image') from e

        if not response.data or not response.data[0].b64_json:
            raise ValidationError(f"No image returned for {key}")
        return base64.b64decode(response.data[0].b64_json)

    async def synthesize_audio(self, key: str, context: Dict[str, Any]) -> bytes:
        try:
            response = await self.client.audio.speech.create(
                model=self.tts_model,
                voice=self.tts_voice,
                input=key
            )
        except openai.OpenAIError as e:
            raise map_openai_error(e, 'tts') from e
        return response.content

    def services(self, dictionary: Optional[SqlDictionary] = None) -> EnrichmentServices:
        return EnrichmentServices(
            dictionary_lookup=dictionary,
            interpret=self.interpret,
            find_confusions=self.find_confusions,
            generate_image=self.generate_image,
            synthesize_audio=self.synthesize_audio,
            generate_insights=self.generate_insights,
        )


def build_services(config, db: Database) -> EnrichmentServices:
    """
    Collaborators for a configured deployment.

    Without an OpenAI key only the dictionary is available: interpretation
    falls back to dictionary entries and the AI and media stages are skipped.
    """
    dictionary = SqlDictionary(
        DictionaryRepository(db, batch_size=int(config.get('batch.dictionary_batch_size', 50)))
    )
    if not config.get_openai_config().get('api_key'):
        logger.warning("No OpenAI API key configured; running with dictionary data only")
        return EnrichmentServices(dictionary_lookup=dictionary)
    return OpenAIEnrichmentProvider.from_config(config).services(dictionary=dictionary)
