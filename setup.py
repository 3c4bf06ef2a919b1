from setuptools import setup, find_packages

setup(
    name="dual_reco",
    version="0.1.0",
    description="Dual (forward + backward) Kalman reference trajectories for track-based alignment",
    author="Your Name",
    author_email="your.email@example.com",
    packages=find_packages(include=["dual_reco", "dual_reco.*"]),
    python_requires=">=3.10",
    install_requires=[
        # Runtime dependencies
        "numpy",
        "numba",
        "pandas",
        "matplotlib",
        "scipy",
        "orjson",
    ],
    extras_require={
        # Developer extras
        "dev": [
            "pytest",
            "black",
            "mypy",
        ],
    },
    entry_points={
        "console_scripts": [
            # CLI entry point for running main.py
            "dual-reco=dual_reco.main:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
)
