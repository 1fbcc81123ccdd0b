"""Setup configuration for pipeline_dashboard"""

from setuptools import setup, find_packages

setup(
    name="ado-pipeline-dashboard",
    version="0.1.0",
    description=(
        "Azure DevOps pipeline dashboard: success rates, execution-time "
        "percentiles and failing-stage breakdowns with a short-lived cache."
    ),
    author="ADO Pipeline Dashboard Contributors",
    author_email="",
    python_requires=">=3.10",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    install_requires=[
        "requests>=2.28.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0",
            "black>=22.0",
            "flake8>=4.0",
            "mypy>=0.950",
        ],
    },
    entry_points={
        "console_scripts": [
            "ado-pipeline-dashboard=pipeline_dashboard.main:main",
        ],
    },
)
