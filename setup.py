"""
netmeter
Network throughput and responsiveness measurement (chunked HTTP + WebSocket)
"""
from setuptools import setup, find_packages

setup(
    name="netmeter",
    version="1.0.0",
    description="Throughput and responsiveness measurement server and client",
    packages=find_packages(exclude=["tests*"]),
    python_requires=">=3.10",
    install_requires=[
        "aiohttp>=3.9",
        "uuid6>=2024.1.12",
    ],
    extras_require={
        "test": [
            "pytest>=7",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "netmeter=netmeter_server.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "Topic :: System :: Networking :: Monitoring",
        "Programming Language :: Python :: 3.10",
    ],
)
