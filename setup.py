"""Setup configuration for the bulkads package."""

from setuptools import setup, find_packages

setup(
    name="bulkads",
    version="1.0.0",
    description="Quota-aware bulk creation of paired Meta ad entities",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    author="Bulkads Team",
    python_requires=">=3.9",
    packages=find_packages(where=".", include=["bulkads*"]),
    package_dir={"": "."},
    install_requires=[
        "python-dotenv==1.0.1",
        "PyYAML==6.0.2",
        "requests==2.32.3",
        "SQLAlchemy==2.0.35",
        "prometheus-client==0.20.0",
        "schedule==1.2.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
        ],
    },
    entry_points={
        "console_scripts": [
            "bulkads=bulkads.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)
