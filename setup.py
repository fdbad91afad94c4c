from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="fleet-autoscaler",
    version="0.1.0",
    description="Autoscaler for build farm agent pools backed by AWS EC2 instances",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["lambda_function"],
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.8",
    install_requires=[
        "boto3>=1.35.0",
        "botocore>=1.35.0",
        "retry>=0.9.2",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "fleet-autoscaler=fleet_autoscaler.main:main",
        ],
    },
)
