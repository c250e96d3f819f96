from setuptools import setup, find_packages

setup(
    name="distributed-rate-limiter",
    version="0.1.0",
    packages=find_packages(include=["ratelimiter", "ratelimiter.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "starlette",
        "pydantic>=2.5",
        "pydantic-settings>=2.7",
        "redis>=5.0.1",
        "uvicorn",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx",
        ],
        "stress": [
            "locust>=2.20",
        ],
    },
)
