from setuptools import find_packages, setup

setup(
    name="block-builder",
    version="0.3.0",
    packages=find_packages(include=["block_builder", "block_builder.*"]),
    install_requires=[line for line in open("requirements-core.txt").read().splitlines() if line],
    extras_require={
        "test": ["pytest>=7.0", "pytest-asyncio>=0.21"],
    },
    python_requires=">=3.9",
    entry_points={
        "console_scripts": [
            "block-builder-state=block_builder.cli:main",
        ],
    },
)
