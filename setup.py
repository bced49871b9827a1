from setuptools import setup, find_packages


setup(
    name="keepsake",
    version="0.1",
    packages=find_packages(include=["keepsake", "keepsake.*"]),
    description="Streaming, authenticated, encrypted backups of an application profile.",
    author="vercingetorx",
    install_requires=[
        "pycryptodomex>=3.23.0",
        "argon2-cffi>=23.1.0",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "keepsake=keepsake.cli:main",
        ]
    },
)
