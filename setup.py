"""Build Huddle package."""
import setuptools

with open("README.md") as f:
    long_desc = f.read()

setuptools.setup(
    name="huddle",
    version="0.1.0",
    description="Multi-party WebRTC rooms negotiated over a websocket relay",
    long_description=long_desc,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(include=["huddle*", "testing*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.9",
    install_requires=[
        "aiortc>=1.9.0",
        "av",
        "click",
        "pydantic>=2",
        "quart",
        "tomli; python_version<'3.11'",
        "tomli-w",
        "typing-extensions; python_version<'3.11'",
        "uvicorn",
        "websockets>=13",
    ],
    extras_require={
        "dev": [
            "coverage",
            "cryptography",
            "pytest",
            "pytest-asyncio",
            "pytest-timeout",
            "requests",
            "uvloop; sys_platform!='win32'",
        ],
    },
    entry_points={
        "console_scripts": [
            "huddle-join=huddle.cli:cli",
            "huddle-relay=huddle.relay.run:cli",
        ],
    },
)
