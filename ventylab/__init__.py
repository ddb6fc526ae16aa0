"""VentyLab client-side lesson progress layer."""
