from setuptools import setup, find_packages

setup(
    name="dinghy",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    python_requires=">=3.10",
    install_requires=[
        "rich",
        "python-dotenv",
        "asn1crypto",
        "lief",
        "toml",
        "rich-argparse",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
    entry_points={
        "console_scripts": [
            "dinghy=dinghy.cli:main",
        ],
    },
)
