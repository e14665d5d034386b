from setuptools import setup, find_packages
from codecs import open

setup(
    name='oidconsumer',
    version='0.1.0',
    description='OpenID consumer. Supports versions 1 and 2 of the OpenID protocol.',
    long_description=open('README.md', encoding='utf-8').read(),
    license='Apache',
    keywords='openid consumer',

    classifiers=[
        'Development Status :: 2 - Pre-Alpha',
        'License :: OSI Approved :: Apache Software License',
        'Programming Language :: Python :: 3',
    ],

    install_requires=['html5lib', 'cryptography'],
    extras_require={'test': ['pytest']},
    packages=find_packages(exclude=['oidconsumer.test']),
)
