from setuptools import setup, find_packages

setup(
    name="cdbootstrap-operator",
    version="0.1.0",
    description="Kubernetes operator bootstrapping CD pipeline agents from CDBootstrap custom resources",
    author="CNDev",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.11",
    install_requires=[
        "kopf>=1.37.0",
        "kubernetes>=28.1.0",
        "urllib3>=1.26",
        "pyyaml>=6.0",
        "azure-core>=1.29.0",
        "azure-identity>=1.15.0",
        "azure-keyvault-secrets>=4.7.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "cdbootstrap-operator=cdbootstrap_operator.operator:main",
        ],
    },
)
