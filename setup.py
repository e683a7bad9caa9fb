from setuptools import setup, find_packages

setup(
    name="windowlimit",
    version="0.1.0",
    packages=find_packages(include=["windowlimit", "windowlimit.*"]),
    python_requires=">=3.11",
    install_requires=[
        "pydantic>=2.0",
        "pydantic-settings>=2.0",
        "redis>=5.0.1",
        "fastapi",
        "starlette",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "httpx",
        ],
    },
)
