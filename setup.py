from setuptools import setup, find_packages

'''
Notes: This is the setup file for the Limen host monitor.
It defines the package metadata and dependencies required for installation.
'''

setup(
    name = "Limen",
    version = "1.0.0",
    description= "Limen - Process, Network and Port Monitor with Anomaly Detection",
    packages=find_packages(include=["limen", "limen.*"]),
    python_requires='>=3.10',
    install_requires=[
        # Core
        "fastapi",
        "uvicorn[standard]",
        "pydantic>=2",
        "PyYAML",
        "python-dotenv",

        # System
        "psutil",
    ],
    extras_require={
        "test": [
            "pytest",
            "httpx",
        ],
    },
)
