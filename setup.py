"""
PeerBeam - Peer-to-peer mesh chat
Full-mesh WebRTC chat rooms with pluggable signaling
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="peerbeam",
    version="1.0.0",
    author="PeerBeam Contributors",
    description="Full-mesh peer-to-peer chat over WebRTC data channels",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["peerbeam", "peerbeam.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Communications :: Chat",
        "Topic :: System :: Networking",
    ],
    python_requires=">=3.10",
    install_requires=[
        "aiohttp>=3.9.0",
        "aiortc>=1.6.0",  # WebRTC peer connections and data channels
        "fastapi>=0.109.0",
        "uvicorn[standard]>=0.25.0",  # websockets support for the relay endpoint
        "click>=8.0.0",
        "rich>=13.0.0",
        "pydantic>=2.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.23.0",
            "httpx>=0.26.0",
            # starlette 0.46+ TestClient cancels the websocket handler right
            # after disconnect, before its cleanup can dispatch peer-left
            "starlette<0.46",
            "pyee>=11.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "peerbeam=peerbeam.cli:main",
        ],
    },
)
