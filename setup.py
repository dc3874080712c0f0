from setuptools import setup, find_namespace_packages

setup(
    name="fahampesa-twofactor",                # имя пакета
    version="0.1.0",
    description="FahamPesa: TOTP two-factor authentication with backup codes and audit trail",
    author="FahamPesa",
    url="https://github.com/fahampesa/fahampesa-twofactor",
    packages=find_namespace_packages(
        include=["services*", "db*", "utils*", "monitoring*", "scripts*"],
        exclude=["tests*"],
    ),
    python_requires=">=3.11",                  # минимальная версия Python
    install_requires=[
        "pyotp>=2.9",
        "cryptography>=42.0",
        "sqlalchemy[asyncio]>=2.0",
        "aiosqlite>=0.20",
        "python-dotenv>=1.0",
        "PyYAML>=6.0",
        "prometheus-client>=0.22",
        "qrcode[pil]>=7.4",
    ],
    extras_require={
        "test": ["pytest>=8.2", "pytest-asyncio>=0.23"],
        "dev": ["black", "isort", "flake8", "mypy", "pytest-cov"],
    },
    classifiers=[
        "Programming Language :: Python :: 3.11",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    include_package_data=True,
    zip_safe=False,
)
