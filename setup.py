import io

from setuptools import find_packages, setup

# Read the README.md file
with io.open("README.md", "r", encoding="utf-8") as f:
    long_description = f.read()

install_requires = [
    "Flask>=3.0.3",
    "requests>=2.28.0",
    "Pillow>=10.3.0",
    "pillow-heif>=0.16.0",
    "pydantic>=2.0.0",
    "pydantic-settings>=2.0.0",
]

extras_require = {
    "test": [
        "pytest>=8.0.0",
        "pytest-cov>=5.0.0",
    ],
}

setup(
    name="mediadrop",
    version="0.1",
    packages=find_packages(include=["mediadrop", "mediadrop.*"]),
    install_requires=install_requires,
    long_description=long_description,
    long_description_content_type="text/markdown",
    extras_require=extras_require,
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "mediadrop-server=mediadrop.server.__main__:main",
            "mediadrop-upload=mediadrop.client.__main__:main",
        ],
    },
)
