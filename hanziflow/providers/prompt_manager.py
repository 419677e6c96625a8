"""
Prompt Manager for the AI collaborators

Prompts live in YAML files next to this module so they can be edited
without code changes.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from jinja2 import Template

from hanziflow.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_PROMPTS_DIR = Path(__file__).parent / 'prompts'


class PromptManager:
    """Loads ``<name>.yaml`` prompts with ``system_prompt`` and ``user_prompt_template``"""

    def __init__(self, prompts_dir: Optional[str] = None):
        self.prompts_dir = Path(prompts_dir) if prompts_dir else DEFAULT_PROMPTS_DIR
        self._prompts_cache: Dict[str, Dict[str, Any]] = {}

    def load_prompt(self, prompt_name: str, use_cache: bool = True) -> Dict[str, Any]:
        """
        Load a prompt from its YAML file

        Raises:
            ConfigurationError: If the prompt file is missing or not a mapping
        """
        if use_cache and prompt_name in self._prompts_cache:
            return self._prompts_cache[prompt_name]

        prompt_file = self.prompts_dir / f"{prompt_name}.yaml"
        if not prompt_file.exists():
            raise ConfigurationError(f"Prompt file not found: {prompt_file}")

        with open(prompt_file, 'r', encoding='utf-8') as f:
            prompt_data = yaml.safe_load(f)

        if not isinstance(prompt_data, dict) or 'user_prompt_template' not in prompt_data:
            raise ConfigurationError(f"Prompt {prompt_name} has no user_prompt_template")

        if use_cache:
            self._prompts_cache[prompt_name] = prompt_data
        return prompt_data

    def get_system_prompt(self, prompt_name: str) -> str:
        return self.load_prompt(prompt_name).get('system_prompt', '')

    def get_user_prompt(self, prompt_name: str, **kwargs) -> str:
        """Render the user prompt template with ``kwargs``"""
        template = Template(self.load_prompt(prompt_name)['user_prompt_template'])
        return template.render(**kwargs)

    def clear_cache(self) -> None:
        self._prompts_cache.clear()

    def list_prompts(self) -> List[str]:
        if not self.prompts_dir.exists():
            return []
        return sorted(f.stem for f in self.prompts_dir.glob('*.yaml'))
