from setuptools import setup, find_packages

setup(
    name="axon-mini",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=[
        "docker>=6.1.0",
        "pony>=0.7.17",
        "pydantic>=2.0",
        "pydantic-settings>=2.0",
        "PyYAML>=6.0",
        "click>=8.1.3",
        "tabulate>=0.9.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "axon-mini=axon_mini.cli:main",
        ],
    },
    python_requires=">=3.9",
)
