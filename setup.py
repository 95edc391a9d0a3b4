from setuptools import setup, find_packages

setup(
    name="voice-orchestration",
    version="1.0.0",
    packages=find_packages(include=["voice_orchestration", "voice_orchestration.*"]),
    install_requires=[
        "pydantic>=2.0",
        "pydantic-settings>=2.0",
        "httpx>=0.24",
        "python-dotenv>=1.0",
        "google-auth>=2.0",
        "google-auth-httplib2>=0.1",
        "google-api-python-client>=2.0",
        "httplib2>=0.20",
        "twilio>=8.10.0",
        "openai>=1.0",
        "supabase>=2.0",
        "fastapi>=0.100",
        "python-multipart>=0.0.6",
        "uvicorn>=0.20",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    python_requires=">=3.10",
)
