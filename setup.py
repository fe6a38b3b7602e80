# Package installation script

from setuptools import setup, find_packages

setup(
    name="iot_fleet",
    version="0.1.0",
    packages=find_packages(where="src", exclude=["tests", "tests.*"]),
    package_dir={"": "src"},
    python_requires=">=3.9",
    entry_points={
        "console_scripts": [
            "iot_fleet=iot_fleet.__main__:main",
        ],
    },
    install_requires=[
        "fastapi",
        "hypercorn",
        "pyyaml",
        "aiomqtt>=2.0",
        "aiosqlite",
        "pydantic>=2",
        "amqtt",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "httpx",
        ],
    },
)
