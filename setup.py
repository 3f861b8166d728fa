# Package installation script

from setuptools import setup, find_namespace_packages

setup(
    name="room_power",
    version="0.1.0",
    packages=find_namespace_packages(where="src", include=["room_power", "room_power.*"]),
    package_dir={"": "src"},
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "room-power=room_power.__main__:main",
        ],
    },
    install_requires=[
        "fastapi",
        "hypercorn",
        "pyyaml",
        "aiomqtt>=2.0",
        "pydantic>=2.0",
        "pymongo>=4.13",
        "python-dotenv",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "httpx",
        ],
    },
)
