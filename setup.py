# setup.py
from setuptools import setup, find_packages

setup(
    name="launchpad",
    version="0.1.0",
    packages=find_packages(include=["launchpad", "launchpad.*"]),
    install_requires=[
        "msgpack",            # pool and trade result encoding
        "prometheus_client",  # monitoring
    ],
    extras_require={
        "test": ["pytest"],
    },
)
