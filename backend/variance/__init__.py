"""
Variance detection package.

Reconciles three imperfect views of physical inventory (POS sales, RFID
scans, historical consumption baselines) into scored variance detections,
then rolls unit-level findings up into brand risk profiles.

Usage:
    from variance.store import build_organization_detection_engine

    engine = await build_organization_detection_engine(AsyncSessionLocal, organization_id)
    results = await engine.analyze_organization(organization_id)
    brands = await engine.analyze_brand_variance(organization_id, results=results)
"""
