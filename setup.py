from setuptools import setup, find_packages


setup(
    name="uepak",
    version="0.1",
    packages=find_packages(include=["uepak", "uepak.*"]),
    description="Reader, writer and command line tool for Unreal Engine .pak archives.",
    python_requires=">=3.8",
    install_requires=[
        "pycryptodomex>=3.23.0",
        "zstandard>=0.22.0",
        "lz4>=4.3.0",
    ],
    entry_points={
        "console_scripts": [
            "uepak=uepak.cli:main",
        ]
    },
)
