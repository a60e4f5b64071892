from setuptools import setup, find_packages


setup(
    name="bkpverify",
    version="0.1",
    packages=find_packages(include=["bkpverify", "bkpverify.*"]),
    description="Integrity verification and controlled corruption testing for ZIP backup archives.",
    author="vercingetorx",
    python_requires=">=3.9",
    install_requires=[
        "pycryptodomex>=3.23.0",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "bkpverify=bkpverify.cli:main",
        ]
    },
)
