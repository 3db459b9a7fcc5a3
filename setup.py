from setuptools import setup, find_packages
setup(
  name="gravity_align",
  version="0.1",
  packages=find_packages(include=["gravity_align", "gravity_align.*"]),
  python_requires=">=3.8",
  install_requires=["numpy","scipy","transforms3d",
                    ],
  extras_require={"test": ["pytest"]},
)
