"""Build callrelay package."""
import setuptools

with open('README.md') as f:
    long_desc = f.read()

setuptools.setup(
    name='callrelay',
    version='0.1.0',
    description='Signaling relay for establishing WebRTC peer-to-peer calls',
    long_description=long_desc,
    long_description_content_type='text/markdown',
    packages=setuptools.find_packages(
        exclude=['tests', 'tests.*', 'testing', 'testing.*'],
    ),
    classifiers=[
        'Programming Language :: Python :: 3',
        'License :: OSI Approved :: Apache Software License',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.10',
    install_requires=[
        'aiortc>=1.5.0',
        'click',
        'pydantic>=2',
        'tomli ; python_version<"3.11"',
        'tomli-w',
        'typing-extensions>=4.3.0 ; python_version<"3.11"',
        'websockets>=13.0',
    ],
    extras_require={
        'dev': [
            'coverage[toml]',
            'cryptography',
            'pytest',
            'pytest-asyncio>=0.23.1',
            'pytest-timeout',
        ],
    },
    entry_points={
        'console_scripts': [
            'callrelay-server = callrelay.run:cli',
        ],
    },
)
