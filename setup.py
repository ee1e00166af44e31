from setuptools import setup, find_packages

setup(
    name="quickshare",
    version="0.0.1",
    python_requires=">=3.10",
    install_requires=[
        "alive-progress>=3.1.4",
    ],
    extras_require={
        "test": ["pytest"],
    },
    packages=find_packages(exclude=["tests"]),
    entry_points={"console_scripts": ["quickshare = quickshare.quickshare:main"]},
)
