"""stagecraft run module - stage execution and image assembly.

- ``parser``/``stage``: manifest model
- ``dag``: stage ordering
- ``executor``/``workspace``: running a stage in its own filesystem
- ``artifact``: hand-off between stages
- ``packages``: package sets and the installer
- ``validate``/``hooks``: gating the final image
- ``build``: the build run state machine

Example usage:
    from stagecraft.run.build import Build
    from stagecraft.run.parser import load_manifest

    result = Build(load_manifest(Path("image.yaml"))).run()
    print(result.image, result.digest)
"""
