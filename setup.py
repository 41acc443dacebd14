from setuptools import setup, find_packages

setup(
    name="kvm-borg",
    version="0.1.0",
    description="Borg backups of KVM virtual machines, their disk images and pass-through block devices",
    author="Entro01",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    package_data={"kvmborg": ["default.yaml"]},
    include_package_data=True,
    install_requires=[
        "click>=8.0.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-mock>=3.10.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "kvm-borg=kvmborg.cli:main",
        ],
    },
    python_requires=">=3.8",
)
