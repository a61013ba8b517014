"""Face gallery building blocks (engine/gallery/matcher/store).

The engine is the only piece that touches a neural network; everything else works
on plain signature vectors so it can be exercised without models.
"""
