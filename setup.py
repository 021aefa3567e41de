from setuptools import setup, find_packages

setup(
    name="toothpaste",
    version="0.1.0",
    packages=find_packages("src"),
    package_dir={"": "src"},
    python_requires=">=3.10",
    install_requires=[
        "cryptography>=42.0.0",
        "pyyaml>=6.0",
        "argon2-cffi>=23.1.0",
        "pydantic>=2.0",
    ],
    extras_require={"test": ["pytest>=7.0", "pytest-asyncio>=0.21"]},
    author="Toothpaste",
    description="Secure pairing, encrypted transport and key store for small-MTU wireless peripherals",
)
