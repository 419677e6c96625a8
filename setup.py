"""
Packaging for hanziflow.

Dependencies are declared here; the test extra pulls in the pytest stack.
"""

from setuptools import setup, find_packages

setup(
    name="hanziflow",
    version="0.3.0",
    description="Rate-limited asynchronous enrichment pipeline for Traditional Chinese flashcards",
    packages=find_packages(exclude=["tests", "tests.*"]),
    package_data={
        "hanziflow.config": ["*.yaml"],
        "hanziflow.providers": ["prompts/*.yaml"],
    },
    python_requires=">=3.9",
    install_requires=[
        'click',
        'jinja2',
        'openai',
        'pydantic>=2.0',
        'pyyaml',
        'sqlalchemy>=2.0'
    ],
    extras_require={
        'postgres': [
            'psycopg2-binary'
        ],
        'test': [
            'httpx',
            'pytest',
            'pytest-asyncio'
        ]
    },
    entry_points={
        'console_scripts': [
            'hanziflow=hanziflow.cli:cli',
        ],
    },
)
