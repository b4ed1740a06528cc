from setuptools import setup, find_packages

setup(
    name="reminder-engine",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "sqlalchemy>=2.0",
        "pydantic",
        "pydantic-settings",
        "python-dotenv",
        "celery",
        "redis",
        "requests",
        "croniter",
        "prometheus-client",
    ],
    extras_require={
        "postgres": ["psycopg2-binary"],
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "reminder-engine=reminder_engine.reminders.service:main",
        ],
    },
)
