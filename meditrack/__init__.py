"""MediTrack clinic backend: patient records and a unified health timeline."""
