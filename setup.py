from setuptools import setup, find_packages

# Read version from version.py
with open("host_maintenance/version.py", "r", encoding="utf-8") as f:
    exec(f.read())

# Read long description from README
with open("README.md", "r", encoding="utf-8") as f:
    long_description = f.read()

# Read requirements
with open("requirements.txt", "r", encoding="utf-8") as f:
    requirements = [line.strip() for line in f if line.strip() and not line.startswith("#")]

def get_package_data():
    """Get all non-Python files that should be included in the package."""
    package_data = {
        "host_maintenance": [
            "config.example.json",
        ]
    }
    return package_data

setup(
    name="host-maintenance",
    version=__version__,  # Version imported from version.py
    description="Unattended package updates and cloud backups for a single Linux host",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Systems Administration",
        "Topic :: System :: Archiving :: Backup",
        "Topic :: Utilities",
    ],
    python_requires=">=3.8",
    install_requires=requirements,
    extras_require={
        "test": [
            "pytest>=7.0",
            "responses>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "host-backup=host_maintenance.main:main_backup",
            "host-update=host_maintenance.main:main_update",
            "host-maintenance=host_maintenance.main:main",
        ],
    },
    package_data=get_package_data(),
    include_package_data=True,
    zip_safe=False,
)
