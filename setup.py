from setuptools import setup, find_packages

setup(
    name="onionrelay",
    version="0.1.0",
    package_dir={"": "src"},
    packages=find_packages("src"),
    python_requires=">=3.10",
    install_requires=[
        "aiohttp>=3.9",
        "cryptography>=42.0.0",
        "pydantic>=2.0",
        "pyyaml>=6.0",
    ],
    extras_require={"test": ["pytest>=7.0", "pytest-asyncio>=0.23"]},
    entry_points={"console_scripts": ["onionrelay=onionrelay.cli:main"]},
    description="Layered-encryption relay network with three-hop circuits",
)
