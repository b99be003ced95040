from setuptools import setup, find_packages

setup(
    name="upload-relay",
    version="2.0.0",
    packages=find_packages(include=["relay", "relay.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn>=0.27",
        "httpx>=0.27",
        "pydantic>=2.6",
        "pydantic-settings>=2.7",
        "python-multipart>=0.0.9",
        "redis>=5.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "respx>=0.21",
        ],
    },
)
