from setuptools import setup, find_packages

setup(
    name="mu2e-filetools",
    version="1.0",
    description="Prefect-based workflow code for checking, moving and archiving Mu2e grid job output",
    packages=find_packages(include=["filetools", "filetools.*"]),
    package_data={"filetools": ["config.yml"]},
    install_requires=[
        "prefect",
        "httpx",
        "PyYAML",
        "python-dotenv",
        "typer",
    ],
    extras_require={
        "test": ["pytest", "pytest-mock"],
    },
    entry_points={
        "console_scripts": [
            "mu2e-filetools=filetools.cli:app",
        ],
    },
)
