from setuptools import setup, find_packages

setup(
    name="route-dispatch",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    include_package_data=True,
    install_requires=[
        "pydantic>=2.0.0",
        "fastapi>=0.100.0",
        "sqlalchemy>=2.0.0",
        "httpx>=0.24.0",
        "pytz",
        "python-dotenv",
    ],
    extras_require={
        "test": [
            "pytest>=8.3.5",
        ],
    },
    entry_points={
        'console_scripts': [
            # Define any command-line scripts here
        ],
    },
)
