from setuptools import setup, find_packages

setup(
    name="pollgate",
    version="0.1.0",
    packages=find_packages(include=["pollgate", "pollgate.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn>=0.27",
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "redis>=5.0.1",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
    },
    entry_points={
        "console_scripts": ["pollgate=pollgate.__main__:main"],
    },
)
