# reconguide/geometry/mesh_cleaning.py

import logging

from reconguide.geometry.mesh_loader import Mesh


def clean_mesh(mesh: Mesh, remove_degenerate: bool = True) -> Mesh:
    """
    Removes degenerate and duplicated triangles from a proxy mesh before it is
    handed to the ray index. Vertex order is left untouched.

    Args:
        mesh (Mesh): Input proxy mesh.
        remove_degenerate (bool): Remove degenerate triangles if True.

    Returns:
        Mesh: Cleaned mesh.
    """
    o3d_mesh = mesh.to_open3d()
    before = len(o3d_mesh.triangles)

    if remove_degenerate:
        o3d_mesh.remove_degenerate_triangles()
    o3d_mesh.remove_duplicated_triangles()

    after = len(o3d_mesh.triangles)
    logging.info(f"[MeshCleaning] Removed {before - after} triangles. Triangles: {after}")

    return Mesh.from_open3d(o3d_mesh)
