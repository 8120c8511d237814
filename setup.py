from setuptools import setup, find_packages

setup(
    name="forum-core",
    version="0.1.0",
    packages=find_packages(include=["forum", "forum.*"]),
    python_requires=">=3.12",
    install_requires=[
        "fastapi",
        "uvicorn",
        "pydantic>=2",
        "pydantic-settings>=2.7",
        "sqlalchemy[asyncio]>=2.0",
        "aiosqlite",
        "asyncpg",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "httpx",
        ],
    },
)
