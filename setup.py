"""Setup file for development installation."""

from setuptools import setup, find_namespace_packages

setup(
    name="zeus-chat",
    version="0.1.0",
    description="Conversation and message orchestration core for a multi-provider AI chat client",
    packages=find_namespace_packages(where="src", include=["zeus_chat*"]),
    package_dir={"": "src"},
    python_requires=">=3.9",
    install_requires=[
        "fastapi>=0.100",
        "pydantic>=2.0",
        "pydantic-settings>=2.0",
        "structlog",
        "httpx",
        "prometheus-client",
        "opentelemetry-instrumentation-fastapi",
        "google-generativeai",
        "google-api-core",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
)
