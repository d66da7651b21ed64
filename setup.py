from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="mobilepay-bridge",
    version="0.1.0",
    description="MobilePay recurring payments bridge for subscription billing and course access",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.104.1",
        "uvicorn[standard]>=0.24.0",
        "pydantic[email]>=2.5.0",
        "pydantic-settings>=2.1.0",
        "celery>=5.3.4",
        "redis>=5.0.1",
        "sqlalchemy>=2.0.23",
        "psycopg2-binary>=2.9.9",
        "python-dotenv>=1.0.0",
        "structlog>=23.2.0",
        "httpx>=0.25.2",
        "tenacity>=8.2.3",
        "croniter>=2.0.1",
        "pytz>=2023.3",
        "python-dateutil>=2.8.2",
        "prometheus-client>=0.19.0",
        "sentry-sdk[fastapi]>=1.39.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.3",
            "pytest-asyncio>=0.21.1",
        ],
    },
)
