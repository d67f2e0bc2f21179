import setuptools

setuptools.setup(
    name="wagerlab",
    version="0.1.0",
    description="A server for multi-participant fight-prediction wagering experiments with solo and group sessions.",
    packages=setuptools.find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "numpy",
        "eventlet",
        "flask",
        "flask-socketio",
        "msgpack",
        "pandas",
        "flatten_dict",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-timeout>=2.3",
        ],
    },
)
