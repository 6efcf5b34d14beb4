from setuptools import setup

setup(
    name="pbs-nodes",
    version="1.0.0",
    description="Command to show a one-line-per-node health and occupancy summary of a PBS cluster.",
    url="https://github.com/basnijholt/pbs-nodes",
    author="Bas Nijholt",
    license="MIT",
    python_requires=">=3.10",
    install_requires=["typer>=0.9", "pydantic>=2.0", "rich>=13.0", "polars>=0.20.5", "pyyaml>=6.0"],
    extras_require={"test": ["pytest"]},
    py_modules=["pbs_nodes"],
    entry_points={"console_scripts": ["pbs-nodes=pbs_nodes:app"]},
)
